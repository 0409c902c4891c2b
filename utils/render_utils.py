"""Markdown rendering of assistant text for rich-capable front-ends."""

from __future__ import annotations

from rich.markdown import Markdown

from base_classes import TextRenderer
from core.messages import RenderedText


class MarkdownRenderer(TextRenderer):
    """Pure text -> RenderedText conversion backed by rich's Markdown."""

    def __init__(self, code_theme: str = 'monokai') -> None:
        self.code_theme = code_theme or 'monokai'

    @classmethod
    def from_config(cls, config) -> 'MarkdownRenderer':
        theme = config.get_option('RENDER', 'code_theme', fallback='monokai') if config else 'monokai'
        return cls(code_theme=str(theme))

    def render(self, text: str) -> RenderedText:
        text = text or ''
        return RenderedText(text=text, renderable=Markdown(text, code_theme=self.code_theme))


class PlainRenderer(TextRenderer):
    def render(self, text: str) -> RenderedText:
        return RenderedText(text=text or '', renderable=text or '')
