import os
from typing import AsyncIterator, List, Optional

from openai import AsyncOpenAI

from base_classes import CompletionMessage, CompletionProvider, CompletionRole


class OpenAIProvider(CompletionProvider):
    """
    OpenAI chat completions, streamed
    """

    name = 'OpenAI'

    def __init__(self, config):
        self.config = config
        self.params = config.get_provider_config(self.name)
        self.client = self._initialize_client()

        self.turn_usage = {'turn_in': 0, 'turn_out': 0}
        self.running_usage = {'total_in': 0, 'total_out': 0}

    def _initialize_client(self) -> AsyncOpenAI:
        """Initialize the client with the [OpenAI] connection parameters"""
        options = {}
        if self.params.get('api_key'):
            options['api_key'] = self.params['api_key']
        elif 'OPENAI_API_KEY' in os.environ:
            options['api_key'] = os.environ['OPENAI_API_KEY']
        elif self.params.get('base_url'):
            # Local OpenAI-compatible servers usually accept any key
            options['api_key'] = 'none'
        else:
            raise RuntimeError("OpenAI API Key is required")

        if self.params.get('base_url'):
            options['base_url'] = self.params['base_url']
        if self.params.get('timeout'):
            options['timeout'] = float(self.params['timeout'])
        return AsyncOpenAI(**options)

    def available_models(self) -> List[str]:
        return list(self.config.list_models(provider=self.name).keys())

    def default_model(self) -> str:
        default = self.config.default_model()
        models = self.available_models()
        if default in models or not models:
            return default
        return models[0]

    def _api_model(self, model: str) -> str:
        """Map a models.ini section name onto the API's model name"""
        return self.config.get_params(model).get('model_name', model)

    @staticmethod
    def _wire_messages(messages: List[CompletionMessage]) -> List[dict]:
        out = [m.to_dict() for m in messages]
        # The transcript ends with the empty assistant turn being filled; don't send it as a prefill
        if out and messages[-1].role is CompletionRole.ASSISTANT and not messages[-1].body:
            out.pop()
        return out

    async def complete(self, model, messages, tools, temperature) -> AsyncIterator[str]:
        api_parms = {
            'model': self._api_model(model),
            'messages': self._wire_messages(messages),
            'temperature': temperature,
            'stream': True,
        }
        if tools:
            api_parms['tools'] = tools
        if self.params.get('stream_options', True):
            api_parms['stream_options'] = {'include_usage': True}

        self.turn_usage = {'turn_in': 0, 'turn_out': 0}

        # Opening failures raise here, before any chunk is produced
        response = await self.client.chat.completions.create(**api_parms)
        return self._iter_chunks(response)

    async def _iter_chunks(self, response) -> AsyncIterator[str]:
        try:
            async for chunk in response:
                if chunk.choices:
                    delta = getattr(chunk.choices[0], 'delta', None)
                    content = getattr(delta, 'content', None) if delta is not None else None
                    if content:
                        yield content
                usage = getattr(chunk, 'usage', None)
                if usage:
                    self.turn_usage = {
                        'turn_in': usage.prompt_tokens or 0,
                        'turn_out': usage.completion_tokens or 0,
                    }
                    self.running_usage['total_in'] += self.turn_usage['turn_in']
                    self.running_usage['total_out'] += self.turn_usage['turn_out']
        finally:
            await response.close()

    async def embed(self, texts: List[str], model: Optional[str] = None) -> List[List[float]]:
        """Create embeddings for a list of texts"""
        chosen = model or self.config.get_option('RAG', 'embedding_model', fallback=None) or 'text-embedding-3-small'
        resp = await self.client.embeddings.create(model=chosen, input=texts)
        return [item.embedding for item in (resp.data or [])]

    def get_usage(self) -> dict:
        return {**self.turn_usage, **self.running_usage}
