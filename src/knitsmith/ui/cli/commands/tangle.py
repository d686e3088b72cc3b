"""Implementation of the ``knitsmith tangle`` command."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from knitsmith.api.service import tangle_document
from knitsmith.core.debug import ConversionError

from .._options import OUTPUT_PANEL, DebugOption, InputPathArgument, VerboseOption
from ..diagnostics import CliEmitter
from ..state import debug_enabled, emit_error, set_cli_state


def tangle(
    ctx: typer.Context,
    input_path: InputPathArgument,
    output: Annotated[
        Path | None,
        typer.Option(
            "--output",
            "-o",
            help="Write the script to this file instead of stdout.",
            dir_okay=False,
            resolve_path=True,
            rich_help_panel=OUTPUT_PANEL,
        ),
    ] = None,
    verbose: VerboseOption = 0,
    debug: DebugOption = False,
) -> None:
    """Extract the evaluated Python chunks of a document into a script."""
    state = set_cli_state(ctx=ctx, verbosity=verbose, debug=debug)
    emitter = CliEmitter(state)
    try:
        script = tangle_document(input_path, output, emitter=emitter)
    except ConversionError as exc:
        if debug_enabled():
            raise
        emit_error(str(exc), exception=exc)
        raise typer.Exit(code=1) from exc

    if output is None:
        typer.echo(script, nl=False)
    elif state.verbosity >= 1:
        state.console.print(f"Tangled script written to {output}")


__all__ = ["tangle"]
