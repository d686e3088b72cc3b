"""Utilities for rendering output partials (snippets)."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, Template, select_autoescape


TEMPLATE_DIR = Path(__file__).resolve().parent / "partials"

_SUFFIXES = {"html": ".html", "markdown": ".md"}


def prefix_lines(text: str, prefix: str) -> str:
    """Prefix every line of ``text`` with ``prefix`` followed by a space."""
    if not prefix:
        return text
    return "\n".join(f"{prefix} {line}" if line else prefix for line in text.split("\n"))


def longest_backtick_run(text: str) -> int:
    longest = current = 0
    for char in text:
        current = current + 1 if char == "`" else 0
        longest = max(longest, current)
    return longest


def fence_for(text: str) -> str:
    """Return a backtick fence long enough to wrap ``text`` verbatim."""
    return "`" * max(3, longest_backtick_run(text) + 1)


class PartialFormatter:
    """Render output partials for one output format using Jinja2."""

    def __init__(self, output_format: str = "html", template_dir: Path = TEMPLATE_DIR) -> None:
        if output_format not in _SUFFIXES:
            raise ValueError(f"Unsupported output format '{output_format}'.")
        self.output_format = output_format
        self.suffix = _SUFFIXES[output_format]
        root = template_dir / output_format
        self.env = Environment(
            loader=FileSystemLoader(root),
            autoescape=select_autoescape(["html"]),
            keep_trailing_newline=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters.setdefault("comment", prefix_lines)
        self.env.filters.setdefault("fence", fence_for)

        self._template_names: dict[str, str] = {}
        for path in root.glob(f"**/*{self.suffix}"):
            relative = path.relative_to(root)
            key = self._normalise_key(relative.with_suffix("").as_posix())
            self._template_names[key] = relative.as_posix()

        self.templates: dict[str, Template] = {}

    @staticmethod
    def _normalise_key(name: str) -> str:
        return name.replace("/", "_").replace("-", "_")

    @property
    def template_names(self) -> set[str]:
        """Return the set of available template identifiers."""
        return set(self._template_names)

    def _get_template(self, key: str) -> Template:
        normalised = self._normalise_key(key)
        template = self.templates.get(normalised)
        if template is not None:
            return template

        template_name = self._template_names.get(normalised)
        if template_name is None:
            raise KeyError(key)

        template = self.env.get_template(template_name)
        self.templates[normalised] = template
        return template

    def __getattr__(self, method: str) -> Callable[..., str]:
        """Proxy calls to templates or custom handlers."""
        mangled = f"handle_{method}"
        try:
            handler = object.__getattribute__(self, mangled)
        except AttributeError:
            handler = None
        if handler is not None:
            return handler  # type: ignore[return-value]

        try:
            template = self._get_template(method)
        except KeyError:
            raise AttributeError(f"Object has no template for '{method}'") from None

        def render_template(*args: Any, **kwargs: Any) -> str:
            """Render the template with optional positional shorthand."""
            if len(args) > 1:
                msg = f"Expected at most 1 argument, got {len(args)}, use keyword arguments instead"
                raise ValueError(msg)
            if args:
                kwargs["text"] = args[0]
            return template.render(**kwargs)

        return render_template

    def handle_raw(self, text: str) -> str:
        """Raw markup bypasses every template and escaping step."""
        return text


__all__ = ["TEMPLATE_DIR", "PartialFormatter", "fence_for", "prefix_lines"]
