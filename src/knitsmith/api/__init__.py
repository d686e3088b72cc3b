"""Facade aggregating the high-level KnitSmith authoring experience.

Architecture
: `parse_document` turns source text into an immutable `Document` made of
  prose and code segments.
: `KnitService` runs the code segments in one shared namespace, replays
  cached chunks, renders the woven output, and writes it with its figures.
: `knit_document`, `knit_text`, and `tangle_document` wrap the service for
  the common one-shot cases.

Usage Example
:
    >>> from tempfile import TemporaryDirectory
    >>> from knitsmith.api import knit_text
    >>> with TemporaryDirectory() as tmpdir:
    ...     response = knit_text("```{python}\\n1 + 1\\n```\\n", tmpdir, output_format="markdown")
    ...     response.outputs[0].text
    '2'
"""

from __future__ import annotations

from knitsmith.core.parser import parse_document, read_document
from knitsmith.core.segments import CapturedOutput, Document, RenderedDocument

from .service import (
    KnitRequest,
    KnitResponse,
    KnitService,
    execute_document,
    knit_document,
    knit_text,
    tangle_document,
    tangle_source,
)


__all__ = [
    "CapturedOutput",
    "Document",
    "KnitRequest",
    "KnitResponse",
    "KnitService",
    "RenderedDocument",
    "execute_document",
    "knit_document",
    "knit_text",
    "parse_document",
    "read_document",
    "tangle_document",
    "tangle_source",
]
