"""Implementation of the ``knitsmith render`` command."""

from __future__ import annotations

import typer

from knitsmith.api.service import KnitRequest, KnitService
from knitsmith.core.debug import ConversionError

from .._options import (
    CacheDirOption,
    ClearCacheOption,
    DebugOption,
    DisableMarkdownExtensionsOption,
    FormatOption,
    InputPathArgument,
    MarkdownExtensionsOption,
    NoCacheOption,
    OutputDirOption,
    StrictOption,
    VerboseOption,
)
from ..diagnostics import CliEmitter
from ..presenter import present_knit_summary
from ..state import debug_enabled, emit_error, set_cli_state


_SERVICE = KnitService()


def render(
    ctx: typer.Context,
    input_path: InputPathArgument,
    output_dir: OutputDirOption = None,
    output_format: FormatOption = None,
    no_cache: NoCacheOption = False,
    clear_cache: ClearCacheOption = False,
    cache_dir: CacheDirOption = None,
    enable_extension: MarkdownExtensionsOption = None,
    disable_extension: DisableMarkdownExtensionsOption = None,
    strict: StrictOption = False,
    verbose: VerboseOption = 0,
    debug: DebugOption = False,
) -> None:
    """Execute the chunks of a document and weave their results into HTML or Markdown."""
    state = set_cli_state(ctx=ctx, verbosity=verbose, debug=debug)
    emitter = CliEmitter(state)
    request = KnitRequest(
        source=input_path,
        output_dir=output_dir,
        output_format=output_format,
        use_cache=not no_cache,
        clear_cache=clear_cache,
        cache_dir=cache_dir,
        strict=strict,
        markdown_extensions=enable_extension,
        disabled_extensions=disable_extension,
        emitter=emitter,
    )
    try:
        response = _SERVICE.knit(request)
    except ConversionError as exc:
        if debug_enabled():
            raise
        emit_error(str(exc), exception=exc)
        raise typer.Exit(code=1) from exc

    present_knit_summary(state, response)


__all__ = ["render"]
