"""
Mock provider for exercising the chat session without an API key.

Replies are either scripted (a queue of chunk lists, where an Exception
instance in the list is raised at that point) or derived from the last user
message, streamed word by word.
"""

import asyncio
import hashlib
import re
from typing import AsyncIterator, List, Optional, Sequence, Union

from base_classes import CompletionMessage, CompletionProvider, CompletionRole


ScriptItem = Union[str, BaseException]


class MockProvider(CompletionProvider):
    """
    A provider that streams canned responses.
    """

    name = 'Mock'
    EMBED_DIM = 64

    def __init__(self, config=None, *, script: Optional[List[Sequence[ScriptItem]]] = None,
                 models: Optional[List[str]] = None, open_error: Optional[BaseException] = None,
                 delay: float = 0.0):
        self.config = config
        self.script = [list(s) for s in (script or [])]
        self.open_error = open_error
        self.delay = delay
        self._models = models
        self.response_count = 0
        self.requests: List[dict] = []

    def available_models(self) -> List[str]:
        if self._models is not None:
            return list(self._models)
        if self.config is not None:
            return list(self.config.list_models(provider=self.name).keys())
        return ['mock']

    def default_model(self) -> str:
        models = self.available_models()
        if self.config is not None and self.config.default_model() in models:
            return self.config.default_model()
        return models[0] if models else 'mock'

    def _reply_for(self, model: str, messages: List[CompletionMessage]) -> List[ScriptItem]:
        if self.script:
            return self.script.pop(0)
        last_user = next((m.body for m in reversed(messages) if m.role is CompletionRole.USER), '')
        if model == 'mock-echo':
            text = last_user
        elif 'hello' in last_user.lower():
            text = f"Hello! I'm a mock assistant. This is response #{self.response_count}."
        else:
            text = f"I received your message: '{last_user[:50]}' This is mock response #{self.response_count}."
        words = text.split(' ')
        return [w + (' ' if i < len(words) - 1 else '') for i, w in enumerate(words)]

    async def complete(self, model, messages, tools, temperature) -> AsyncIterator[str]:
        self.requests.append({
            'model': model,
            'messages': [m.to_dict() for m in messages],
            'tools': list(tools),
            'temperature': temperature,
        })
        if self.open_error is not None:
            raise self.open_error
        self.response_count += 1
        return self._stream(self._reply_for(model, messages))

    async def _stream(self, items: List[ScriptItem]) -> AsyncIterator[str]:
        for item in items:
            await asyncio.sleep(self.delay)
            if isinstance(item, BaseException):
                raise item
            yield item

    async def embed(self, texts: List[str], model: Optional[str] = None) -> List[List[float]]:
        """Deterministic hashed bag-of-words vectors."""
        out = []
        for text in texts:
            vec = [0.0] * self.EMBED_DIM
            for word in re.findall(r'\w+', text.lower()):
                h = int(hashlib.md5(word.encode('utf-8')).hexdigest(), 16)
                vec[h % self.EMBED_DIM] += 1.0
            out.append(vec)
        return out
