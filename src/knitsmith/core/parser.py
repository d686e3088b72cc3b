"""Split literate source documents into prose and code segments.

Executable chunks use braced fences (```` ```{python label, echo=false} ````).
Fences without braces are ordinary Markdown code blocks and stay inside the
surrounding prose untouched.
"""

from __future__ import annotations

from collections.abc import Mapping
import logging
from pathlib import Path
import re
from typing import Any

from knitsmith.adapters.markdown import split_front_matter_lines

from .debug import ensure_emitter
from .diagnostics import DiagnosticEmitter
from .exceptions import MalformedFenceError
from .metadata import parse_metadata
from .options import coerce_option_value, normalise_option_key
from .segments import CodeSegment, Document, ProseSegment, Segment


__all__ = [
    "UNNAMED_CHUNK_PREFIX",
    "parse_chunk_header",
    "parse_document",
    "read_document",
]

_log = logging.getLogger(__name__)

UNNAMED_CHUNK_PREFIX = "unnamed-chunk-"

_CHUNK_OPEN = re.compile(r"^(?P<indent> {0,3})(?P<fence>`{3,})\s*\{(?P<header>.*)\}\s*$")
_PLAIN_FENCE = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})")


def _split_options(text: str) -> list[str]:
    """Split on commas that are not nested inside quotes or brackets."""
    parts: list[str] = []
    current: list[str] = []
    quote: str | None = None
    depth = 0
    for char in text:
        if quote:
            current.append(char)
            if char == quote:
                quote = None
            continue
        if char in {"'", '"'}:
            quote = char
        elif char in "([{":
            depth += 1
        elif char in ")]}" and depth:
            depth -= 1
        elif char == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))
    return [part.strip() for part in parts]


def _split_assignment(token: str) -> tuple[str, str] | None:
    quote: str | None = None
    for position, char in enumerate(token):
        if quote:
            if char == quote:
                quote = None
            continue
        if char in {"'", '"'}:
            quote = char
        elif char == "=":
            return token[:position].strip(), token[position + 1 :]
    return None


def parse_chunk_header(header: str) -> tuple[str, str | None, dict[str, Any]]:
    """Parse a chunk header into ``(language, label, options)``.

    The first bare token separated from the language by whitespace (not a
    comma) is the chunk label; later bare tokens are boolean flags.
    """
    tokens = _split_options(header.strip())
    head = tokens[0] if tokens else ""
    rest = tokens[1:]

    language, _, trailing = head.partition(" ")
    language = language.strip().lower() or "text"
    trailing = trailing.strip()

    label: str | None = None
    options: dict[str, Any] = {}
    if trailing:
        if _split_assignment(trailing) is None:
            label = trailing
        else:
            rest.insert(0, trailing)

    for token in rest:
        if not token:
            continue
        assignment = _split_assignment(token)
        if assignment is None:
            options[normalise_option_key(token)] = True
            continue
        key, raw_value = assignment
        if not key:
            continue
        options[normalise_option_key(key)] = coerce_option_value(raw_value)

    explicit = options.pop("label", None)
    if explicit not in (None, True, False, ""):
        label = str(explicit)
    return language, label, options


def _is_closing_fence(line: str, fence: str) -> bool:
    stripped = line.strip()
    return len(stripped) >= len(fence) and set(stripped) == {"`"}


def _assign_labels(
    raw_segments: list[dict[str, Any]],
    emitter: DiagnosticEmitter,
) -> None:
    used: set[str] = set()
    unnamed = 0
    for entry in raw_segments:
        if entry["kind"] != "code":
            continue
        label = entry.get("label")
        if not label:
            unnamed += 1
            label = f"{UNNAMED_CHUNK_PREFIX}{unnamed}"
        if label in used:
            suffix = 2
            while f"{label}-{suffix}" in used:
                suffix += 1
            renamed = f"{label}-{suffix}"
            emitter.warning(f"Duplicate chunk label '{label}' renamed to '{renamed}'.")
            label = renamed
        used.add(label)
        entry["label"] = label


def parse_document(
    text: str,
    *,
    source_path: Path | None = None,
    strict: bool = False,
    emitter: DiagnosticEmitter | None = None,
) -> Document:
    """Parse raw document text into an ordered :class:`Document`."""
    active_emitter = ensure_emitter(emitter)
    front_matter, body, offset = split_front_matter_lines(text)
    metadata = parse_metadata(front_matter)

    lines = body.splitlines(keepends=True)
    raw_segments: list[dict[str, Any]] = []
    issues: list[MalformedFenceError] = []
    prose: list[str] = []
    plain_fence: str | None = None

    def _flush_prose() -> None:
        if prose and "".join(prose).strip():
            raw_segments.append({"kind": "prose", "text": "".join(prose)})
        prose.clear()

    position = 0
    while position < len(lines):
        line = lines[position]
        if plain_fence is not None:
            prose.append(line)
            if line.strip().startswith(plain_fence) and set(line.strip()) == {plain_fence[0]}:
                plain_fence = None
            position += 1
            continue

        opened = _CHUNK_OPEN.match(line.rstrip("\r\n"))
        if opened is None:
            plain = _PLAIN_FENCE.match(line)
            if plain is not None:
                plain_fence = plain.group("fence")
            prose.append(line)
            position += 1
            continue

        _flush_prose()
        fence = opened.group("fence")
        header = opened.group("header")
        language, label, options = parse_chunk_header(header)
        start_line = offset + position + 1
        body_lines: list[str] = []
        position += 1
        terminated = False
        while position < len(lines):
            candidate = lines[position]
            position += 1
            if _is_closing_fence(candidate, fence):
                terminated = True
                break
            body_lines.append(candidate)

        source = "".join(body_lines)
        if source.endswith("\n"):
            source = source[:-1]
        raw_segments.append(
            {
                "kind": "code",
                "language": language,
                "label": label,
                "options": options,
                "source": source,
                "header": header,
                "fence": fence,
                "line": start_line,
                "unterminated": not terminated,
            }
        )
        if not terminated:
            message = (
                f"Code fence opened on line {start_line} is never closed; "
                "treating the rest of the document as one chunk."
            )
            error = MalformedFenceError(message, line=start_line, label=label)
            if strict:
                raise error
            issues.append(error)
            active_emitter.warning(message)
            _log.debug("unterminated chunk header: %s", header)

    _flush_prose()
    _assign_labels(raw_segments, active_emitter)

    segments: list[Segment] = []
    for index, entry in enumerate(raw_segments):
        if entry["kind"] == "prose":
            segments.append(ProseSegment(text=entry["text"], index=index))
            continue
        segments.append(
            CodeSegment(
                language=entry["language"],
                source=entry["source"],
                label=entry["label"],
                options=dict(entry["options"]),
                index=index,
                header=entry["header"],
                fence=entry["fence"],
                line=entry["line"],
                unterminated=entry["unterminated"],
            )
        )

    return Document(
        segments=tuple(segments),
        metadata=metadata,
        source_path=source_path,
        issues=tuple(issues),
    )


def read_document(
    path: Path,
    *,
    strict: bool = False,
    emitter: DiagnosticEmitter | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Document:
    """Read and parse a document from disk."""
    text = path.read_text(encoding="utf-8")
    document = parse_document(text, source_path=path, strict=strict, emitter=emitter)
    if not overrides:
        return document
    payload = document.metadata.model_dump()
    payload.update(overrides)
    return Document(
        segments=document.segments,
        metadata=parse_metadata(payload),
        source_path=document.source_path,
        issues=document.issues,
    )
