"""Diagnostic emitter bridging the knitting pipeline with the Rich CLI."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from knitsmith.core.diagnostics import DiagnosticEmitter, format_event_message

from .presenter import present_progress
from .state import CLIState, emit_error, emit_warning, get_cli_state


class CliEmitter(DiagnosticEmitter):
    """Record chunk events on the CLI state and surface warnings and errors.

    Events are kept for the end-of-run summary; at ``-v`` they are also
    printed as progress lines.
    """

    def __init__(self, state: CLIState | None = None, *, debug_enabled: bool | None = None) -> None:
        self._state = state or get_cli_state()
        if debug_enabled is None:
            debug_enabled = self._state.show_tracebacks
        self.debug_enabled = bool(debug_enabled)

    def warning(self, message: str, exc: BaseException | None = None) -> None:
        emit_warning(message, exception=exc)

    def error(self, message: str, exc: BaseException | None = None) -> None:
        emit_error(message, exception=exc)

    def event(self, name: str, payload: Mapping[str, Any]) -> None:
        data = dict(payload)
        self._state.record_event(name, data)
        message = format_event_message(name, data)
        if message:
            present_progress(self._state, message)


__all__ = ["CliEmitter"]
