"""CLI command implementations."""

from __future__ import annotations

from .render import render
from .tangle import tangle


__all__ = ["render", "tangle"]
