"""Registry for generated assets (figures) referenced by the woven output."""

from __future__ import annotations

from collections.abc import Callable, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path

from slugify import slugify

from .exceptions import AssetWriteError


__all__ = ["AssetRegistry", "figure_directory"]


def figure_directory(stem: str, output_format: str = "html") -> Path:
    """Relative directory receiving figures for a document stem."""
    return Path(f"{stem}_files") / f"figure-{output_format}"


@dataclass(slots=True)
class AssetRegistry:
    """Centralised registry for rendered assets.

    Paths handed to the renderer are relative to ``output_root`` so the woven
    document can be moved together with its ``*_files`` directory.
    """

    output_root: Path
    stem: str = "document"
    output_format: str = "html"
    assets_map: MutableMapping[str, Path] = field(default_factory=dict)

    @property
    def figure_root(self) -> Path:
        return self.output_root / figure_directory(self.stem, self.output_format)

    def figure_key(self, label: str, index: int, suffix: str = ".png") -> str:
        """Deterministic relative path for the ``index``-th figure of a chunk."""
        slug = slugify(label, separator="-", lowercase=False) or "chunk"
        name = f"{slug}-{index}{suffix}"
        return (figure_directory(self.stem, self.output_format) / name).as_posix()

    def write(self, key: str, writer: Callable[[Path], None]) -> Path:
        """Create the asset at ``key`` through ``writer`` and register it."""
        target = self.resolve(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            writer(target)
        except Exception as exc:
            raise AssetWriteError(f"Unable to write asset '{key}': {exc}") from exc
        if not target.exists():
            raise AssetWriteError(f"Asset writer did not produce '{key}'.")
        return self.register(key, target)

    def register(self, key: str, artefact: Path | str) -> Path:
        """Register a generated artefact and return its resolved path."""
        path = Path(artefact)
        if not path.is_absolute():
            path = (self.output_root / path).resolve()
        self.assets_map[key] = path
        return path

    def resolve(self, key: str) -> Path:
        """Absolute location for a relative asset key."""
        return (self.output_root / key).resolve()

    def lookup(self, key: str) -> Path | None:
        """Return a previously registered artefact when available."""
        stored = self.assets_map.get(key)
        return Path(stored) if stored is not None else None
