"""Retrieval augmentation for submitted user turns.

Given a submit mode, optionally gathers codebase excerpts for a turn before
it is sent. Only the fan-out/fan-in policy lives here: the search and the
file loads are delegated to a RetrievalService and a FileLoader.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import List, Optional

from base_classes import FileLoader, RetrievalService, SearchResult
from contexts.codebase_context import CodebaseExcerpt
from utils.logging_utils import LoggingHandler, NullLogger


DEFAULT_TOP_K = 4


class SubmitMode(str, Enum):
    # Only include the conversation.
    SIMPLE = 'simple'
    # Send the current file as context (reserved, currently attaches nothing).
    CURRENT_FILE = 'current-file'
    # Search the codebase and send relevant excerpts.
    CODEBASE = 'codebase'

    @classmethod
    def coerce(cls, value) -> 'SubmitMode':
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace('_', '-')
        for mode in cls:
            if mode.value == key:
                return mode
        raise ValueError(f"Unknown submit mode: {value!r}")


class ExcerptRangeError(ValueError):
    pass


class ContextAttacher:
    """Resolves search hits into excerpts, dropping any that fail individually."""

    def __init__(
        self,
        retrieval: RetrievalService,
        loader: FileLoader,
        *,
        top_k: int = DEFAULT_TOP_K,
        logger: Optional[LoggingHandler] = None,
    ) -> None:
        self.retrieval = retrieval
        self.loader = loader
        self.top_k = top_k
        self.logger = logger or NullLogger()

    async def resolve_excerpt(self, result: SearchResult) -> CodebaseExcerpt:
        abs_path = result.abs_path()
        text = await self.loader.load(abs_path)
        start, end = result.range
        if start < 0 or end < start or end > len(text):
            raise ExcerptRangeError(f"Range {start}..{end} outside {result.path} ({len(text)} chars)")
        return CodebaseExcerpt(path=result.path, text=text[start:end], score=result.score)

    async def fetch_excerpts(self, query: str) -> List[CodebaseExcerpt]:
        """Search, then load every hit in parallel; keep search order."""
        self.logger.rag_event('search_begin', {'query': query, 'top_k': self.top_k})
        try:
            results = await self.retrieval.search(query, self.top_k)
        except Exception as e:
            self.logger.error('core.context_attachment.search', e)
            return []
        self.logger.rag_event('search_done', {'hits': len(results)})

        # gather() returns results in argument order regardless of completion order
        resolved = await asyncio.gather(
            *(self.resolve_excerpt(result) for result in results),
            return_exceptions=True,
        )

        excerpts: List[CodebaseExcerpt] = []
        for result, item in zip(results, resolved):
            if isinstance(item, Exception):
                self.logger.rag_event('excerpt_dropped', {
                    'path': result.path,
                    'reason': f"{type(item).__name__}: {item}",
                })
                continue
            if isinstance(item, BaseException):
                raise item
            excerpts.append(item)
        return excerpts
