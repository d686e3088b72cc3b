"""Document data model: segments, captured outputs, and rendered blocks.

Architecture
: A :class:`Document` is an immutable, ordered tuple of segments. Prose
  segments carry opaque Markdown; code segments carry the fence header, the
  parsed option mapping, and the verbatim source.
: Execution results are modelled as a closed set of :class:`OutputKind`
  values. The executor classifies every produced value exactly once, so the
  renderer only dispatches on ``unit.kind``.

Usage Example
:
    >>> from knitsmith.core.segments import OutputKind, OutputUnit
    >>> OutputUnit(OutputKind.TEXT, "6").to_dict()
    {'kind': 'text', 'payload': '6'}
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
import hashlib
from pathlib import Path
from typing import Any

from .exceptions import EvaluationError, MalformedFenceError
from .metadata import DocumentMetadata


__all__ = [
    "CapturedOutput",
    "CodeSegment",
    "Document",
    "OutputKind",
    "OutputUnit",
    "ProseSegment",
    "RenderedBlock",
    "RenderedDocument",
    "Segment",
]


@dataclass(slots=True, frozen=True)
class ProseSegment:
    """Opaque Markdown passed through to the renderer."""

    text: str
    index: int = 0

    @property
    def kind(self) -> str:
        return "prose"


@dataclass(slots=True, frozen=True)
class CodeSegment:
    """Executable chunk delimited by a braced code fence."""

    language: str
    source: str
    label: str
    options: Mapping[str, Any] = field(default_factory=dict)
    index: int = 0
    header: str = ""
    fence: str = "```"
    line: int = 0
    unterminated: bool = False

    @property
    def kind(self) -> str:
        return "code"

    @property
    def digest(self) -> str:
        """Content hash over the language tag and source text."""
        payload = f"{self.language}\x00{self.source}".encode()
        return hashlib.sha256(payload).hexdigest()


Segment = ProseSegment | CodeSegment


@dataclass(slots=True, frozen=True)
class Document:
    """Parsed source document."""

    segments: tuple[Segment, ...]
    metadata: DocumentMetadata = field(default_factory=DocumentMetadata)
    source_path: Path | None = None
    issues: tuple[MalformedFenceError, ...] = ()

    def __iter__(self) -> Iterator[Segment]:
        return iter(self.segments)

    def __len__(self) -> int:
        return len(self.segments)

    @property
    def code_segments(self) -> list[CodeSegment]:
        return [segment for segment in self.segments if isinstance(segment, CodeSegment)]

    @property
    def stem(self) -> str:
        return self.source_path.stem if self.source_path is not None else "document"


class OutputKind(str, Enum):
    """Discriminator for captured output units."""

    TEXT = "text"
    MESSAGE = "message"
    WARNING = "warning"
    ERROR = "error"
    IMAGE = "image"
    RAW = "raw"


@dataclass(slots=True, frozen=True)
class OutputUnit:
    """Single typed output produced while executing a chunk."""

    kind: OutputKind
    payload: str
    notice: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value, "payload": self.payload}
        if self.notice:
            data["notice"] = True
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OutputUnit:
        return cls(
            kind=OutputKind(data["kind"]),
            payload=str(data.get("payload", "")),
            notice=bool(data.get("notice", False)),
        )


@dataclass(slots=True)
class CapturedOutput:
    """Outputs captured for one chunk, in emission order."""

    label: str
    units: list[OutputUnit] = field(default_factory=list)
    failed: bool = False
    cached: bool = False
    evaluated: bool = True
    bindings: list[str] = field(default_factory=list)
    error: EvaluationError | None = field(default=None, compare=False, repr=False)

    def append(self, kind: OutputKind, payload: str, *, notice: bool = False) -> None:
        """Append a unit; console streams lose their final line break."""
        if kind in {OutputKind.TEXT, OutputKind.MESSAGE} and payload.endswith("\n"):
            payload = payload[:-1]
        if not payload and kind is not OutputKind.RAW:
            return
        self.units.append(OutputUnit(kind, payload, notice=notice))

    def of_kind(self, kind: OutputKind) -> list[OutputUnit]:
        return [unit for unit in self.units if unit.kind is kind]

    @property
    def text(self) -> str:
        """Text output joined line by line."""
        return "\n".join(unit.payload for unit in self.of_kind(OutputKind.TEXT))

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "units": [unit.to_dict() for unit in self.units],
            "failed": self.failed,
            "evaluated": self.evaluated,
            "bindings": list(self.bindings),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CapturedOutput:
        return cls(
            label=str(data["label"]),
            units=[OutputUnit.from_dict(entry) for entry in data.get("units", [])],
            failed=bool(data.get("failed", False)),
            evaluated=bool(data.get("evaluated", True)),
            bindings=[str(name) for name in data.get("bindings", [])],
        )


@dataclass(slots=True, frozen=True)
class RenderedBlock:
    """Rendered markup for one input segment."""

    index: int
    kind: str
    markup: str
    label: str | None = None
    failed: bool = False


@dataclass(slots=True)
class RenderedDocument:
    """Final woven output plus the assets it references."""

    blocks: list[RenderedBlock]
    content: str
    format: str = "html"
    assets: list[Path] = field(default_factory=list)
    outputs: Sequence[CapturedOutput | None] = field(default_factory=list)

    @property
    def failed_labels(self) -> list[str]:
        return [block.label for block in self.blocks if block.failed and block.label]
