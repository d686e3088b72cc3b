"""Primary public API for KnitSmith."""

from __future__ import annotations

from knitsmith.api import (
    CapturedOutput,
    Document,
    KnitRequest,
    KnitResponse,
    KnitService,
    RenderedDocument,
    execute_document,
    knit_document,
    knit_text,
    parse_document,
    read_document,
    tangle_document,
)
from knitsmith.core.assets import AssetRegistry
from knitsmith.core.cache import ChunkCache
from knitsmith.core.environment import EvaluationEnvironment
from knitsmith.core.exceptions import (
    AssetWriteError,
    CacheInconsistencyError,
    EvaluationError,
    KnitError,
    MalformedFenceError,
)
from knitsmith.core.executor import SegmentExecutor
from knitsmith.core.renderer import DocumentRenderer, render_document
from knitsmith.core.segments import CodeSegment, OutputKind, OutputUnit, ProseSegment
from knitsmith.core.user_dir import (
    KnitsmithUserDir,
    configure_user_dir,
    get_user_dir,
    user_dir_context,
)
from knitsmith.version import get_version


__version__ = get_version()

__all__ = [
    "AssetRegistry",
    "AssetWriteError",
    "CacheInconsistencyError",
    "CapturedOutput",
    "ChunkCache",
    "CodeSegment",
    "Document",
    "DocumentRenderer",
    "EvaluationEnvironment",
    "EvaluationError",
    "KnitError",
    "KnitRequest",
    "KnitResponse",
    "KnitService",
    "KnitsmithUserDir",
    "MalformedFenceError",
    "OutputKind",
    "OutputUnit",
    "ProseSegment",
    "RenderedDocument",
    "SegmentExecutor",
    "__version__",
    "configure_user_dir",
    "execute_document",
    "get_user_dir",
    "knit_document",
    "knit_text",
    "parse_document",
    "read_document",
    "render_document",
    "tangle_document",
    "user_dir_context",
]
