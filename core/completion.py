from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from base_classes import CompletionMessage, CompletionProvider, TextRenderer
from core.cancellation import CancellationToken
from core.messages import RenderedText
from utils.logging_utils import LoggingHandler, NullLogger


DEFAULT_TEMPERATURE = 1.0


@dataclass
class CompletionOutcome:
    """How a streaming run ended."""

    text: str
    chunks: int
    error: Optional[str] = None
    # True when the target went away or the run was cancelled mid-stream
    abandoned: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.abandoned


def describe_error(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or type(exc).__name__


class CompletionPipeline:
    """Streams a model reply, republishing the full accumulated text per chunk.

    apply_body receives a RenderedText built from everything streamed so far and
    returns False when the target turn can no longer accept updates, which
    stops consumption without recording an error.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        renderer: TextRenderer,
        *,
        temperature: float = DEFAULT_TEMPERATURE,
        logger: Optional[LoggingHandler] = None,
    ) -> None:
        self.provider = provider
        self.renderer = renderer
        self.temperature = temperature
        self.logger = logger or NullLogger()

    async def run(
        self,
        model: str,
        messages: List[CompletionMessage],
        apply_body: Callable[[RenderedText], bool],
        token: Optional[CancellationToken] = None,
    ) -> CompletionOutcome:
        body = ''
        chunks = 0
        started = time.monotonic()
        self.logger.provider_start({'model': model, 'messages': len(messages), 'temperature': self.temperature})
        self.logger.messages_detail('completion_messages', {'messages': [m.to_dict() for m in messages]})

        outcome: CompletionOutcome
        stream = None
        try:
            stream = await self.provider.complete(model, messages, [], self.temperature)
            async for chunk in stream:
                if token is not None and token.is_cancelled():
                    outcome = CompletionOutcome(text=body, chunks=chunks, abandoned=True)
                    break
                body += chunk
                chunks += 1
                if not apply_body(self.renderer.render(body)):
                    outcome = CompletionOutcome(text=body, chunks=chunks, abandoned=True)
                    break
            else:
                outcome = CompletionOutcome(text=body, chunks=chunks)
        except Exception as e:
            self.logger.error('core.completion.stream', e)
            outcome = CompletionOutcome(text=body, chunks=chunks, error=describe_error(e))
        finally:
            aclose = getattr(stream, 'aclose', None)
            if aclose is not None:
                await aclose()

        self.logger.provider_done({
            'model': model,
            'chunks': outcome.chunks,
            'chars': len(outcome.text),
            'ok': outcome.ok,
            'abandoned': outcome.abandoned,
            'error': outcome.error,
            'duration_ms': int((time.monotonic() - started) * 1000),
            'usage': self.provider.get_usage(),
        })
        return outcome
