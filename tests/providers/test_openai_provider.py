from __future__ import annotations

import asyncio
import os
import sys
from types import SimpleNamespace

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir, os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import pytest

from base_classes import CompletionMessage, CompletionRole
from providers.openai_provider import OpenAIProvider


class FakeConfig:
    def __init__(self, params):
        self.params = params

    def get_provider_config(self, name):
        return dict(self.params)

    def get_params(self, model):
        return {'model_name': f'api-{model}'}

    def list_models(self, provider=None):
        return {'gpt-4o': {}}

    def default_model(self):
        return 'gpt-4o'

    def get_option(self, section, key, fallback=None):
        return fallback


def _chunk(content=None, usage=None):
    choices = [SimpleNamespace(delta=SimpleNamespace(content=content))] if content is not None else []
    return SimpleNamespace(choices=choices, usage=usage)


class FakeStream:
    def __init__(self, chunks):
        self.chunks = chunks
        self.closed = False

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for c in self.chunks:
            yield c

    async def close(self):
        self.closed = True


class FakeCompletions:
    def __init__(self, stream):
        self.stream = stream
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        return self.stream


def test_complete_streams_content_and_tracks_usage():
    provider = OpenAIProvider(FakeConfig({'api_key': 'k'}))
    stream = FakeStream([
        _chunk('Hel'),
        _chunk('lo'),
        _chunk(usage=SimpleNamespace(prompt_tokens=3, completion_tokens=2)),
    ])
    completions = FakeCompletions(stream)
    provider.client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    messages = [CompletionMessage(CompletionRole.USER, 'hi'), CompletionMessage(CompletionRole.ASSISTANT, '')]

    async def run():
        it = await provider.complete('gpt-4o', messages, [], 0.7)
        return [c async for c in it]

    assert asyncio.run(run()) == ['Hel', 'lo']
    assert stream.closed
    assert completions.kwargs['model'] == 'api-gpt-4o'
    assert completions.kwargs['messages'] == [{'role': 'user', 'content': 'hi'}]
    assert completions.kwargs['temperature'] == 0.7
    assert 'tools' not in completions.kwargs
    assert provider.get_usage() == {'turn_in': 3, 'turn_out': 2, 'total_in': 3, 'total_out': 2}


def test_missing_api_key_is_an_error(monkeypatch):
    monkeypatch.delenv('OPENAI_API_KEY', raising=False)
    with pytest.raises(RuntimeError):
        OpenAIProvider(FakeConfig({}))
    # Local compatible servers do not need a key
    assert OpenAIProvider(FakeConfig({'base_url': 'http://localhost:8080/v1'})).client is not None
