"""Knitting orchestration utilities for CLI and embedding integrations."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from knitsmith.adapters.markdown import resolve_markdown_extensions
from knitsmith.core.assets import AssetRegistry
from knitsmith.core.cache import (
    ROOT_FINGERPRINT,
    ChunkCache,
    chain_fingerprint,
    chunk_cache_key,
    resolve_chunk_cache,
)
from knitsmith.core.debug import (
    ConversionError,
    ensure_emitter,
    raise_conversion_error,
    record_event,
)
from knitsmith.core.diagnostics import DiagnosticEmitter
from knitsmith.core.environment import EvaluationEnvironment
from knitsmith.core.exceptions import CacheInconsistencyError, MalformedFenceError
from knitsmith.core.executor import PYTHON_ENGINES, SegmentExecutor
from knitsmith.core.metadata import PreambleError, normalise_output_format, parse_metadata
from knitsmith.core.options import resolve_options
from knitsmith.core.parser import parse_document, read_document
from knitsmith.core.renderer import DocumentRenderer
from knitsmith.core.segments import CapturedOutput, CodeSegment, Document, RenderedDocument


__all__ = [
    "KnitRequest",
    "KnitResponse",
    "KnitService",
    "execute_document",
    "knit_document",
    "knit_text",
    "output_suffix",
    "tangle_document",
    "tangle_source",
]

_SUFFIXES = {"html": ".html", "markdown": ".md"}


def output_suffix(output_format: str) -> str:
    """File suffix of the woven document for ``output_format``."""
    return _SUFFIXES[output_format]


@dataclass(slots=True)
class KnitRequest:
    """Immutable description of a knit run."""

    source: Path
    output_dir: Path | None = None
    output_format: str | None = None
    use_cache: bool = True
    clear_cache: bool = False
    cache_dir: Path | None = None
    strict: bool = False
    write: bool = True
    markdown_extensions: Sequence[str] | None = None
    disabled_extensions: Sequence[str] | None = None
    emitter: DiagnosticEmitter | None = None


@dataclass(slots=True)
class KnitResponse:
    """Captured outcome of :class:`KnitService` execution."""

    document: Document
    rendered: RenderedDocument
    outputs: list[CapturedOutput | None]
    output_path: Path | None = None
    request: KnitRequest | None = None
    assets: list[Path] = field(default_factory=list)

    @property
    def content(self) -> str:
        return self.rendered.content

    @property
    def failed_labels(self) -> list[str]:
        return [output.label for output in self.outputs if output is not None and output.failed]

    @property
    def cached_labels(self) -> list[str]:
        return [output.label for output in self.outputs if output is not None and output.cached]


def execute_document(
    document: Document,
    *,
    output_root: Path,
    output_format: str | None = None,
    cache: ChunkCache | None = None,
    environment: EvaluationEnvironment | None = None,
    emitter: DiagnosticEmitter | None = None,
) -> list[CapturedOutput | None]:
    """Run every code segment in order; prose segments map to ``None``.

    Chunks with ``cache=true`` are replayed from ``cache`` when their key
    matches. A cache entry that cannot be replayed is discarded and the chunk
    runs again.
    """
    emitter = ensure_emitter(emitter)
    fmt = output_format or document.metadata.output
    environment = environment if environment is not None else EvaluationEnvironment()
    assets = AssetRegistry(output_root, stem=document.stem, output_format=fmt)
    working_dir = document.source_path.parent if document.source_path is not None else None
    executor = SegmentExecutor(
        environment,
        assets,
        defaults=document.metadata.options,
        output_format=fmt,
        working_dir=working_dir,
        emitter=emitter,
    )

    outputs: list[CapturedOutput | None] = []
    fingerprint = ROOT_FINGERPRINT
    total = len(document.code_segments)
    position = 0
    for segment in document.segments:
        if not isinstance(segment, CodeSegment):
            outputs.append(None)
            continue

        position += 1
        options = executor.options_for(segment)
        signature = options.cache_signature()
        use_cache = cache is not None and options.cache and options.eval
        key = chunk_cache_key(segment, fingerprint, signature)

        output: CapturedOutput | None = None
        if use_cache:
            output = _replay(cache, key, segment, environment, assets, emitter)
        if output is None:
            record_event(
                emitter,
                "chunk_execute",
                {"label": segment.label, "index": position, "total": total},
            )
            output = executor.execute(segment, options)
            if use_cache and _cacheable(output):
                cache.store(key, output, environment.export(output.bindings), assets)

        if options.eval:
            fingerprint = chain_fingerprint(fingerprint, segment, signature)
        outputs.append(output)

    if cache is not None:
        cache.flush()
    return outputs


def _cacheable(output: CapturedOutput) -> bool:
    """Failed chunks and chunks whose figures could not be written are not stored."""
    return not output.failed and not any(unit.notice for unit in output.units)


def _replay(
    cache: ChunkCache,
    key: str,
    segment: CodeSegment,
    environment: EvaluationEnvironment,
    assets: AssetRegistry,
    emitter: DiagnosticEmitter,
) -> CapturedOutput | None:
    try:
        hit = cache.lookup(key, segment.label, assets)
    except CacheInconsistencyError as exc:
        emitter.warning(str(exc))
        record_event(emitter, "cache_invalidated", {"label": segment.label, "reason": str(exc)})
        return None
    if hit is None:
        return None
    for message in hit.warnings:
        emitter.warning(message)
    environment.apply(hit.bindings)
    record_event(emitter, "chunk_cached", {"label": segment.label})
    return hit.output


class KnitService:
    """High-level façade that parses, executes, renders, and writes a document."""

    def prepare(self, request: KnitRequest) -> Document:
        """Read and parse the source document of ``request``."""
        emitter = ensure_emitter(request.emitter)
        try:
            return read_document(request.source, strict=request.strict, emitter=emitter)
        except (OSError, UnicodeDecodeError) as exc:
            raise_conversion_error(emitter, f"Unable to read '{request.source}': {exc}", exc)
        except (MalformedFenceError, PreambleError) as exc:
            raise_conversion_error(emitter, str(exc), exc)

    def resolve_format(self, request: KnitRequest, document: Document) -> str:
        if request.output_format is None:
            return document.metadata.output
        try:
            return normalise_output_format(request.output_format)
        except ValueError as exc:
            raise ConversionError(str(exc)) from exc

    def knit(self, request: KnitRequest, *, document: Document | None = None) -> KnitResponse:
        """Execute a knit run and return a structured response."""
        emitter = ensure_emitter(request.emitter)
        if document is None:
            document = self.prepare(request)
        fmt = self.resolve_format(request, document)
        output_dir = (request.output_dir or request.source.parent).resolve()

        cache: ChunkCache | None = None
        if request.use_cache or request.clear_cache:
            try:
                cache = resolve_chunk_cache(request.source, request.cache_dir)
            except OSError as exc:
                emitter.warning(f"Chunk cache unavailable: {exc}", exc)
            else:
                if request.clear_cache:
                    cache.clear()
                if not request.use_cache:
                    cache = None

        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise_conversion_error(emitter, f"Unable to create '{output_dir}': {exc}", exc)

        outputs = execute_document(
            document, output_root=output_dir, output_format=fmt, cache=cache, emitter=emitter
        )

        assets = AssetRegistry(output_dir, stem=document.stem, output_format=fmt)
        renderer = DocumentRenderer(
            fmt,
            assets=assets,
            theme=document.metadata.theme,
            defaults=document.metadata.options,
            markdown_extensions=resolve_markdown_extensions(
                request.markdown_extensions, request.disabled_extensions
            ),
            emitter=emitter,
        )
        rendered = renderer.render(document, outputs)

        output_path: Path | None = None
        if request.write:
            output_path = output_dir / f"{document.stem}{output_suffix(fmt)}"
            try:
                output_path.write_text(rendered.content, encoding="utf-8")
            except OSError as exc:
                raise_conversion_error(emitter, f"Unable to write '{output_path}': {exc}", exc)

        return KnitResponse(
            document=document,
            rendered=rendered,
            outputs=outputs,
            output_path=output_path,
            request=request,
            assets=[output_dir / path for path in rendered.assets],
        )

    def tangle(self, document: Document) -> str:
        """Extract the evaluated Python chunks of ``document`` as one script."""
        return tangle_source(document)


def tangle_source(document: Document) -> str:
    """Concatenate evaluated Python chunks, each introduced by a ``# %%`` cell marker."""
    cells: list[str] = []
    for segment in document.code_segments:
        options = resolve_options(document.metadata.options, segment.options)
        if not options.eval or segment.language not in PYTHON_ENGINES:
            continue
        cells.append(f"# %% {segment.label}\n{segment.source}".rstrip() + "\n")
    return "\n".join(cells)


def knit_document(
    path: Path | str,
    output_dir: Path | str | None = None,
    *,
    output_format: str | None = None,
    use_cache: bool = True,
    strict: bool = False,
    emitter: DiagnosticEmitter | None = None,
    **kwargs: Any,
) -> KnitResponse:
    """Knit the document at ``path`` and write the woven output next to it."""
    request = KnitRequest(
        source=Path(path),
        output_dir=Path(output_dir) if output_dir is not None else None,
        output_format=output_format,
        use_cache=use_cache,
        strict=strict,
        emitter=emitter,
        **kwargs,
    )
    return KnitService().knit(request)


def knit_text(
    text: str,
    output_dir: Path | str,
    *,
    output_format: str | None = None,
    metadata: Mapping[str, Any] | None = None,
    emitter: DiagnosticEmitter | None = None,
) -> KnitResponse:
    """Knit document text in memory without a chunk cache or an output file."""
    document = parse_document(text, emitter=emitter)
    if metadata:
        payload = document.metadata.model_dump()
        payload.update(metadata)
        document = Document(
            segments=document.segments,
            metadata=parse_metadata(payload),
            issues=document.issues,
        )
    request = KnitRequest(
        source=Path(output_dir) / f"{document.stem}.Rmd",
        output_dir=Path(output_dir),
        output_format=output_format,
        use_cache=False,
        write=False,
        emitter=emitter,
    )
    return KnitService().knit(request, document=document)


def tangle_document(
    path: Path | str,
    output: Path | str | None = None,
    *,
    emitter: DiagnosticEmitter | None = None,
) -> str:
    """Return (and optionally write) the Python script tangled from ``path``."""
    source = Path(path)
    service = KnitService()
    document = service.prepare(KnitRequest(source=source, emitter=emitter))
    script = service.tangle(document)
    if output is not None:
        target = Path(output)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(script, encoding="utf-8")
        except OSError as exc:
            raise_conversion_error(emitter, f"Unable to write '{target}': {exc}", exc)
    return script
