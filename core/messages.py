from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

from contexts.codebase_context import CodebaseContext


# Closed set of context variants attached to user turns
AssistantContext = Union[CodebaseContext]


class TurnNotFoundError(LookupError):
    """A turn id was referenced that is not in the transcript."""


class ContextNotFoundError(LookupError):
    """A context id was referenced that is not attached to the given turn."""


@dataclass(frozen=True)
class RenderedText:
    """Accumulated plain text plus its display form."""
    text: str = ''
    renderable: Any = None


@dataclass
class UserTurn:
    id: int
    body: str = ''
    contexts: List[AssistantContext] = field(default_factory=list)

    role = 'user'


@dataclass
class AssistantTurn:
    id: int
    body: RenderedText = field(default_factory=RenderedText)
    error: Optional[str] = None

    role = 'assistant'

    @property
    def text(self) -> str:
        return self.body.text


ChatMessage = Union[UserTurn, AssistantTurn]
