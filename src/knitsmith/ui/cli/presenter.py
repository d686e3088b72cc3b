"""Rich-aware presenters for CLI output and diagnostics."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from knitsmith.api.service import KnitResponse

from .state import CLIState


if TYPE_CHECKING:  # pragma: no cover - typing only
    from rich.console import Console


def _get_console(state: CLIState, *, stderr: bool = False) -> Console:
    return state.err_console if stderr else state.console


def _format_path(path: Path) -> str:
    """Format a path relative to the current working directory for display."""
    resolved = path.resolve()
    try:
        return str(resolved.relative_to(Path.cwd()))
    except ValueError:
        return str(resolved)


def _size_details(path: Path) -> str:
    """Return a human-readable size for a file if it exists."""
    try:
        stat = path.stat()
    except OSError:
        return ""
    if not path.is_file():
        return ""
    size = stat.st_size
    if size >= 1024 * 1024:
        return f"{size / (1024 * 1024):.2f} MiB"
    if size >= 1024:
        return f"{size / 1024:.1f} KiB"
    return f"{size} B"


def _render_summary(state: CLIState, title: str, rows: Sequence[tuple[str, str, str]]) -> None:
    """Display a summary table of generated artifacts."""
    from rich import box
    from rich.table import Table

    table = Table(box=box.SQUARE, header_style="bold cyan")
    if title:
        table.title = title
    table.add_column("Artifact", style="cyan")
    table.add_column("Location")
    table.add_column("Filesize", style="magenta", justify="right", no_wrap=True)
    for artifact, location, details in rows:
        table.add_row(artifact, location, details)
    _get_console(state).print(table)


def present_progress(state: CLIState, message: str) -> None:
    """Print one progress line for a chunk event when running with ``-v``."""
    if state.verbosity < 1:
        return
    from rich.text import Text

    _get_console(state).print(Text(message, style="dim"))


def present_knit_summary(state: CLIState, response: KnitResponse) -> None:
    """Summarise the files produced by a knit run."""
    rows: list[tuple[str, str, str]] = []
    if response.output_path is not None:
        label = "HTML" if response.rendered.format == "html" else "Markdown"
        path = response.output_path
        rows.append((label, _format_path(path), _size_details(path)))
    for asset in response.assets:
        rows.append(("Figure", _format_path(asset), _size_details(asset)))
    if rows:
        _render_summary(state, "", rows)

    chunks = [output for output in response.outputs if output is not None]
    cached = len(response.cached_labels)
    failed = response.failed_labels
    line = f"{len(chunks)} chunk(s) knitted, {cached} from cache"
    failures = state.consume_events("chunk_failed")
    if failed:
        from rich.text import Text

        err_console = _get_console(state, stderr=True)
        err_console.print(Text(f"{line}, {len(failed)} failed: {', '.join(failed)}", "yellow"))
        for event in failures:
            err_console.print(Text(f"  {event.get('label')}: {event.get('error')}", "yellow"))
    elif state.verbosity >= 1:
        _get_console(state).print(line)


__all__ = ["present_knit_summary", "present_progress"]
