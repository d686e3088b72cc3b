"""Debug and diagnostic helpers used throughout the knitting pipeline."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, NoReturn

from .diagnostics import DiagnosticEmitter, LoggingEmitter, NullEmitter


class ConversionError(Exception):
    """Raised when a knit run fails and cannot recover."""


def ensure_emitter(emitter: DiagnosticEmitter | None) -> DiagnosticEmitter:
    """Return a usable emitter, defaulting to the null implementation."""
    return emitter if emitter is not None else NullEmitter()


def raise_conversion_error(
    emitter: DiagnosticEmitter | None,
    message: str,
    exc: Exception,
) -> NoReturn:
    """Emit an error diagnostic before raising a conversion failure."""
    ensure_emitter(emitter).error(message, exc)
    error = ConversionError(message)
    error._knitsmith_logged = True  # noqa: SLF001
    raise error from exc


def record_event(
    emitter: DiagnosticEmitter | None,
    event: str,
    payload: Mapping[str, Any],
) -> None:
    """Forward a structured diagnostic event."""
    ensure_emitter(emitter).event(event, payload)


__all__ = [
    "ConversionError",
    "DiagnosticEmitter",
    "LoggingEmitter",
    "NullEmitter",
    "ensure_emitter",
    "raise_conversion_error",
    "record_event",
]
