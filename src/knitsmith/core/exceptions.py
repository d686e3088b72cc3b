"""Custom exception hierarchy for the knitting pipeline."""

from __future__ import annotations


class KnitError(RuntimeError):
    """Base exception for knitting failures."""


class MalformedFenceError(KnitError):
    """Raised when a chunk fence is opened but never closed."""

    def __init__(self, message: str, *, line: int | None = None, label: str | None = None) -> None:
        super().__init__(message)
        self.line = line
        self.label = label


class EvaluationError(KnitError):
    """Raised when a statement inside a chunk fails."""

    def __init__(self, message: str, *, label: str | None = None, line: int | None = None) -> None:
        super().__init__(message)
        self.label = label
        self.line = line


class AssetWriteError(KnitError):
    """Raised when a generated asset cannot be persisted."""


class CacheInconsistencyError(KnitError):
    """Raised when a cached chunk cannot be replayed faithfully."""


__all__ = [
    "AssetWriteError",
    "CacheInconsistencyError",
    "EvaluationError",
    "KnitError",
    "MalformedFenceError",
]
