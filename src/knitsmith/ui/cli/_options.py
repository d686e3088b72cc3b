"""Shared Typer option definitions for CLI commands."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer


INPUTS_PANEL = "Input Handling"
RENDERING_PANEL = "Rendering"
OUTPUT_PANEL = "Output"
DIAGNOSTICS_PANEL = "Diagnostics"

InputPathArgument = Annotated[
    Path,
    typer.Argument(
        metavar="INPUT",
        help="Literate source document (.Rmd, .md) mixing Markdown and code chunks.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
        resolve_path=True,
        rich_help_panel=INPUTS_PANEL,
    ),
]

StrictOption = Annotated[
    bool,
    typer.Option(
        "--strict",
        help="Fail on unterminated code fences instead of recovering.",
        rich_help_panel=INPUTS_PANEL,
    ),
]

OutputDirOption = Annotated[
    Path | None,
    typer.Option(
        "--output-dir",
        "-o",
        help="Directory receiving the woven document and its figures.",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        rich_help_panel=OUTPUT_PANEL,
    ),
]

FormatOption = Annotated[
    str | None,
    typer.Option(
        "--format",
        "-f",
        help="Output format (html or markdown); defaults to the document preamble.",
        rich_help_panel=OUTPUT_PANEL,
    ),
]

NoCacheOption = Annotated[
    bool,
    typer.Option(
        "--no-cache",
        help="Execute every chunk even when it requests caching.",
        rich_help_panel=RENDERING_PANEL,
    ),
]

ClearCacheOption = Annotated[
    bool,
    typer.Option(
        "--clear-cache",
        help="Drop cached chunk results for this document before knitting.",
        rich_help_panel=RENDERING_PANEL,
    ),
]

CacheDirOption = Annotated[
    Path | None,
    typer.Option(
        "--cache-dir",
        help="Override the chunk cache directory.",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        rich_help_panel=RENDERING_PANEL,
    ),
]

MarkdownExtensionsOption = Annotated[
    list[str] | None,
    typer.Option(
        "--enable-extension",
        "-x",
        help=(
            "Additional Markdown extensions to enable "
            "(comma or space separated values are accepted)."
        ),
        show_default=False,
        rich_help_panel=RENDERING_PANEL,
    ),
]

DisableMarkdownExtensionsOption = Annotated[
    list[str] | None,
    typer.Option(
        "--disable-extension",
        "-X",
        help="Markdown extensions to disable. Provide a comma separated list or repeat the option.",
        show_default=False,
        rich_help_panel=RENDERING_PANEL,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase CLI verbosity. Combine multiple times for additional diagnostics.",
        rich_help_panel=DIAGNOSTICS_PANEL,
    ),
]

DebugOption = Annotated[
    bool,
    typer.Option(
        "--debug",
        help="Show full tracebacks when an unexpected error occurs.",
        rich_help_panel=DIAGNOSTICS_PANEL,
    ),
]
