"""Chunk option coercion and precedence resolution.

Options reach a chunk from three layers, each overriding the previous one:
system defaults, the ``options`` mapping of the document preamble, and the
chunk header itself. Unknown keys travel untouched in
:attr:`ChunkOptions.extra`.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
import re
from typing import Any


__all__ = [
    "RESULTS_MODES",
    "ChunkOptions",
    "coerce_bool",
    "coerce_option_value",
    "normalise_option_key",
    "resolve_options",
]

RESULTS_MODES = frozenset({"markup", "asis", "hide"})

_TRUE_VALUES = {"true", "yes", "on", "t"}
_FALSE_VALUES = {"false", "no", "off", "f", "none", "null"}
_INT_PATTERN = re.compile(r"^[+-]?\d+$")
_FLOAT_PATTERN = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?$")


def normalise_option_key(key: str) -> str:
    """Return the canonical spelling for an option key (``fig.cap`` -> ``fig_cap``)."""
    return key.strip().replace(".", "_").replace("-", "_")


def coerce_bool(value: Any, default: bool) -> bool:
    """Coerce loose truthy/falsey values, falling back to ``default``."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        token = value.strip().lower()
        if token in _TRUE_VALUES or token == "1":
            return True
        if token in _FALSE_VALUES or token == "0":
            return False
    return default


def coerce_option_value(raw: str) -> Any:
    """Interpret a raw option value from a chunk header."""
    text = raw.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {"'", '"'}:
        return text[1:-1]
    lowered = text.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    if _INT_PATTERN.match(text):
        return int(text)
    if _FLOAT_PATTERN.match(text):
        return float(text)
    return text


@dataclass(slots=True, frozen=True)
class ChunkOptions:
    """Effective options for one chunk after precedence has been applied."""

    echo: bool = True
    eval: bool = True
    include: bool = True
    warning: bool = True
    message: bool = True
    error: bool = True
    results: str = "markup"
    cache: bool = False
    comment: str = "##"
    fig_cap: str | None = None
    fig_width: float | None = None
    fig_height: float | None = None
    dpi: int = 96
    ieee: bool = False
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def asis(self) -> bool:
        return self.results == "asis"

    @property
    def hide_results(self) -> bool:
        return self.results == "hide"

    def cache_signature(self) -> dict[str, Any]:
        """Return the options that influence execution results."""
        return {
            "eval": self.eval,
            "results": self.results,
            "fig_width": self.fig_width,
            "fig_height": self.fig_height,
            "dpi": self.dpi,
            "ieee": self.ieee,
        }


_BOOL_FIELDS = ("echo", "eval", "include", "warning", "message", "error", "cache", "ieee")
_KNOWN_FIELDS = {definition.name for definition in fields(ChunkOptions)} - {"extra"}


def _coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def resolve_options(*layers: Mapping[str, Any] | None) -> ChunkOptions:
    """Merge option layers (lowest precedence first) into :class:`ChunkOptions`."""
    merged: dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            merged[normalise_option_key(str(key))] = value

    defaults = ChunkOptions()
    values: dict[str, Any] = {}
    for name in _BOOL_FIELDS:
        values[name] = coerce_bool(merged.get(name), getattr(defaults, name))

    results = str(merged.get("results", defaults.results)).strip().lower()
    if results in {"hold", "markdown"}:
        results = "markup"
    values["results"] = results if results in RESULTS_MODES else defaults.results

    comment = merged.get("comment", defaults.comment)
    values["comment"] = "" if comment in (None, False) else str(comment)

    caption = merged.get("fig_cap")
    values["fig_cap"] = str(caption) if caption not in (None, False, "") else None
    values["fig_width"] = _coerce_float(merged.get("fig_width"))
    values["fig_height"] = _coerce_float(merged.get("fig_height"))

    dpi = _coerce_float(merged.get("dpi"))
    values["dpi"] = int(dpi) if dpi and dpi > 0 else defaults.dpi

    values["extra"] = {key: value for key, value in merged.items() if key not in _KNOWN_FIELDS}
    return ChunkOptions(**values)
