"""Weave segments and captured outputs into the final document.

The renderer emits exactly one :class:`RenderedBlock` per input segment and
keeps document order. A failure while rendering one block degrades that
block to an inline notice; the other blocks are unaffected.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
import logging
from pathlib import Path
from typing import Any

from markupsafe import Markup
from slugify import slugify

from knitsmith.adapters.markdown import render_markdown
from knitsmith.version import get_version

from .assets import AssetRegistry
from .debug import ensure_emitter
from .diagnostics import DiagnosticEmitter
from .formatter import PartialFormatter
from .highlight import PygmentsHtmlHighlighter
from .options import ChunkOptions, resolve_options
from .segments import (
    CapturedOutput,
    CodeSegment,
    Document,
    OutputKind,
    OutputUnit,
    ProseSegment,
    RenderedBlock,
    RenderedDocument,
    Segment,
)


__all__ = ["DocumentRenderer", "render_document"]

_log = logging.getLogger(__name__)

_STREAM_KINDS = frozenset(
    {OutputKind.TEXT, OutputKind.MESSAGE, OutputKind.WARNING, OutputKind.ERROR}
)


class DocumentRenderer:
    """Render a parsed document and its outputs as HTML or Markdown."""

    def __init__(
        self,
        output_format: str = "html",
        *,
        assets: AssetRegistry | None = None,
        theme: str | None = None,
        defaults: Mapping[str, Any] | None = None,
        markdown_extensions: Sequence[str] | None = None,
        emitter: DiagnosticEmitter | None = None,
    ) -> None:
        self.output_format = output_format
        self.formatter = PartialFormatter(output_format)
        self.assets = assets
        self.defaults = dict(defaults or {})
        self.markdown_extensions = markdown_extensions
        self.emitter = ensure_emitter(emitter)
        self.highlighter = PygmentsHtmlHighlighter(style=theme or "default")

    @property
    def is_html(self) -> bool:
        return self.output_format == "html"

    def render(
        self,
        document: Document,
        outputs: Sequence[CapturedOutput | None],
    ) -> RenderedDocument:
        """Weave ``document`` with the outputs aligned to its segments."""
        if len(outputs) != len(document.segments):
            raise ValueError(
                f"Expected {len(document.segments)} outputs, received {len(outputs)}."
            )

        blocks = [
            self.render_block(segment, output)
            for segment, output in zip(document.segments, outputs, strict=True)
        ]
        body = self._join([block.markup for block in blocks if block.markup])
        content = self._page(document, body)

        assets: list[Path] = []
        for output in outputs:
            if output is None:
                continue
            for unit in output.of_kind(OutputKind.IMAGE):
                if self._asset_exists(unit.payload):
                    assets.append(Path(unit.payload))

        return RenderedDocument(
            blocks=blocks,
            content=content,
            format=self.output_format,
            assets=assets,
            outputs=list(outputs),
        )

    def render_block(self, segment: Segment, output: CapturedOutput | None) -> RenderedBlock:
        """Render a single segment, degrading to a notice when it fails."""
        label = segment.label if isinstance(segment, CodeSegment) else None
        try:
            if isinstance(segment, ProseSegment):
                markup = self._render_prose(segment)
                return RenderedBlock(index=segment.index, kind="prose", markup=markup)
            markup = self._render_code(segment, output)
        except Exception as exc:  # noqa: BLE001 - isolate block rendering failures
            message = f"Unable to render block {segment.index}: {exc}"
            self.emitter.warning(message, exc)
            _log.debug("block %s failed to render", segment.index, exc_info=exc)
            notice = self.formatter.notice(title="Rendering failed.", text=str(exc))
            return RenderedBlock(
                index=segment.index, kind=segment.kind, markup=notice, label=label, failed=True
            )
        failed = bool(output and output.failed)
        return RenderedBlock(
            index=segment.index, kind="code", markup=markup, label=label, failed=failed
        )

    def options_for(self, segment: CodeSegment) -> ChunkOptions:
        return resolve_options(self.defaults, segment.options)

    def _render_prose(self, segment: ProseSegment) -> str:
        if not self.is_html:
            return segment.text.strip("\n")
        document = render_markdown(segment.text, self.markdown_extensions, front_matter=False)
        return document.html

    def _render_code(self, segment: CodeSegment, output: CapturedOutput | None) -> str:
        options = self.options_for(segment)
        output = output or CapturedOutput(label=segment.label, evaluated=False)
        failed_notice = output.failed and not options.error

        if not options.include and not output.failed:
            return ""

        parts: list[str] = []
        if options.echo and options.include:
            parts.append(self._render_source(segment))

        visible = [unit for unit in output.units if self._visible(unit, options)]
        if options.include:
            parts.extend(self._render_units(visible, segment, options))

        if failed_notice or (output.failed and not options.include):
            parts.append(
                self.formatter.notice(
                    title="Evaluation failed.",
                    text=f"Chunk '{segment.label}' raised an error.",
                )
            )

        body = self._join(parts)
        anchor = f"chunk-{slugify(segment.label) or segment.index}"
        return self.formatter.chunk(
            body=Markup(body) if self.is_html else body,
            anchor=anchor,
            failed=output.failed,
            cached=output.cached,
        )

    def _render_source(self, segment: CodeSegment) -> str:
        if self.is_html:
            code = Markup(self.highlighter.render(segment.source, segment.language))
            return self.formatter.source(code=code, language=segment.language)
        return self.formatter.source(code=segment.source, language=segment.language)

    @staticmethod
    def _visible(unit: OutputUnit, options: ChunkOptions) -> bool:
        if unit.kind in {OutputKind.TEXT, OutputKind.RAW}:
            return not options.hide_results
        if unit.kind is OutputKind.WARNING:
            return options.warning
        if unit.kind is OutputKind.MESSAGE:
            return options.message
        if unit.kind is OutputKind.ERROR:
            return options.error or unit.notice
        return True

    def _render_units(
        self, units: Sequence[OutputUnit], segment: CodeSegment, options: ChunkOptions
    ) -> list[str]:
        parts: list[str] = []
        pending: list[OutputUnit] = []

        def _flush() -> None:
            if pending:
                text = "\n".join(unit.payload for unit in pending)
                parts.append(
                    self.formatter.output(
                        text=text, kind=pending[0].kind.value, prefix=options.comment
                    )
                )
                pending.clear()

        for unit in units:
            stream = unit.kind in _STREAM_KINDS and not unit.notice
            if stream and options.asis and unit.kind is OutputKind.TEXT:
                stream = False
            if stream:
                if pending and pending[0].kind is not unit.kind:
                    _flush()
                pending.append(unit)
                continue
            _flush()
            parts.append(self._render_unit(unit, segment, options))
        _flush()
        return parts

    def _render_unit(self, unit: OutputUnit, segment: CodeSegment, options: ChunkOptions) -> str:
        if unit.kind in {OutputKind.RAW, OutputKind.TEXT}:
            return self.formatter.raw(unit.payload)
        if unit.kind is OutputKind.IMAGE:
            if not self._asset_exists(unit.payload):
                self.emitter.warning(
                    f"Figure '{unit.payload}' of chunk '{segment.label}' is missing."
                )
                return self.formatter.notice(
                    title="Missing figure.", text=f"'{unit.payload}' could not be found."
                )
            return self.formatter.figure(
                src=unit.payload, caption=options.fig_cap, label=segment.label
            )
        return self.formatter.notice(title="Error.", text=unit.payload)

    def _asset_exists(self, key: str) -> bool:
        if self.assets is None:
            return True
        path = self.assets.lookup(key) or self.assets.resolve(key)
        return path.exists()

    def _join(self, parts: Sequence[str]) -> str:
        separator = "\n" if self.is_html else "\n\n"
        return separator.join(part for part in parts if part)

    def _page(self, document: Document, body: str) -> str:
        metadata = document.metadata
        context: dict[str, Any] = {
            "title": metadata.title,
            "subtitle": metadata.subtitle,
            "authors": metadata.author,
            "date": metadata.date,
            "stem": document.stem,
            "version": get_version(),
            "language": metadata.extra_fields.get("lang"),
        }
        if self.is_html:
            context["body"] = Markup(body)
            context["highlight_css"] = Markup(self.highlighter.style_defs())
            return self.formatter.page(**context) + "\n"
        context["body"] = body
        return self.formatter.page(**context).rstrip("\n") + "\n"


def render_document(
    document: Document,
    outputs: Sequence[CapturedOutput | None],
    *,
    output_format: str | None = None,
    assets: AssetRegistry | None = None,
    emitter: DiagnosticEmitter | None = None,
) -> RenderedDocument:
    """Render ``document`` using its preamble for format, theme, and defaults."""
    renderer = DocumentRenderer(
        output_format or document.metadata.output,
        assets=assets,
        theme=document.metadata.theme,
        defaults=document.metadata.options,
        emitter=emitter,
    )
    return renderer.render(document, outputs)
