"""
Abstract base classes for assistant-chat collaborators.

These classes define the interfaces that completion providers, retrieval
services, file loaders and renderers must implement to be driven by the
chat session engine.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, List, Optional, Tuple


class CompletionRole(str, Enum):
    USER = 'user'
    ASSISTANT = 'assistant'


@dataclass(frozen=True)
class CompletionMessage:
    """One role-tagged plain-text message handed to a completion provider."""
    role: CompletionRole
    body: str

    def to_dict(self) -> dict:
        return {'role': self.role.value, 'content': self.body}


class CompletionProvider(ABC):
    """
    Abstract class for streaming completion APIs
    """

    @abstractmethod
    async def complete(
        self,
        model: str,
        messages: List[CompletionMessage],
        tools: List[Any],
        temperature: float,
    ) -> AsyncIterator[str]:
        """Open a stream and return an async iterator of text chunks.

        Raising here means the stream could not be opened; raising from the
        iterator means a chunk read failed.
        """
        pass

    @abstractmethod
    def default_model(self) -> str:
        pass

    @abstractmethod
    def available_models(self) -> List[str]:
        pass

    def get_usage(self) -> dict:
        """Token counts for the last completion and the session so far, when the API reports them"""
        return {}


@dataclass(frozen=True)
class SearchResult:
    """A retrieval hit: a path relative to its root, a char range and a score."""
    root: Optional[str]
    path: str
    range: Tuple[int, int]
    score: float
    index: Optional[str] = None

    def abs_path(self) -> str:
        # Imported here so base_classes stays free of filesystem helpers
        from rag.fs_utils import resolve_worktree_path
        return resolve_worktree_path(self.root, self.path)


class RetrievalService(ABC):
    """
    Abstract class for similarity search over indexed project content
    """

    @abstractmethod
    async def search(self, query: str, top_k: int) -> List[SearchResult]:
        pass


class FileLoader(ABC):
    """
    Abstract class for loading file content; failures raise
    """

    @abstractmethod
    async def load(self, path: str) -> str:
        pass


class TextRenderer(ABC):
    """
    Abstract class for turning accumulated text into a display form
    """

    @abstractmethod
    def render(self, text: str) -> Any:
        pass
