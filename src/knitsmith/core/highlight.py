"""Pygments integration helpers for HTML rendering."""

from __future__ import annotations

import logging

from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import ClassNotFound, TextLexer, get_lexer_by_name
from pygments.styles import get_all_styles


_log = logging.getLogger(__name__)

DEFAULT_STYLE = "default"


def resolve_style(theme: str | None) -> str:
    """Return a Pygments style name for ``theme``, falling back to the default."""
    if not theme:
        return DEFAULT_STYLE
    candidate = theme.strip().lower()
    if candidate in set(get_all_styles()):
        return candidate
    _log.warning("Unknown highlight theme '%s', using '%s'.", theme, DEFAULT_STYLE)
    return DEFAULT_STYLE


class PygmentsHtmlHighlighter:
    """Convert chunk sources to highlighted HTML using Pygments."""

    def __init__(self, *, style: str = DEFAULT_STYLE, css_class: str = "highlight") -> None:
        self.style = resolve_style(style)
        self.css_class = css_class

    def _formatter(self) -> HtmlFormatter:
        return HtmlFormatter(style=self.style, cssclass=self.css_class)

    def render(self, code: str, language: str) -> str:
        """Return the highlighted markup for ``code``."""
        try:
            lexer = get_lexer_by_name(language or "text")
        except ClassNotFound:
            lexer = TextLexer()
        return highlight(code, lexer, self._formatter())

    def style_defs(self) -> str:
        """CSS rules for the active style, scoped to the highlight class."""
        return self._formatter().get_style_defs(f".{self.css_class}")


__all__ = ["DEFAULT_STYLE", "PygmentsHtmlHighlighter", "resolve_style"]
