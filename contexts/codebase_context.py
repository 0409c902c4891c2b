from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


@dataclass(frozen=True)
class CodebaseExcerpt:
    path: str
    text: str
    score: float


@dataclass
class CodebaseContext:
    """
    Codebase search results attached to a user turn.

    Created pending; populate() fills it exactly once.
    """
    id: int
    excerpts: List[CodebaseExcerpt] = field(default_factory=list)
    pending: bool = True

    def populate(self, excerpts: List[CodebaseExcerpt]) -> None:
        if not self.pending:
            raise RuntimeError(f"Codebase context {self.id} already populated")
        self.excerpts = list(excerpts)
        self.pending = False

    def summary(self) -> str:
        """Short text form for line-oriented front-ends."""
        if self.pending:
            return '⏳ searching codebase…'
        if not self.excerpts:
            return 'No relevant excerpts found.'
        lines = [f"{e.path} ({e.score:.3f})" for e in self.excerpts]
        return '\n'.join(lines)

