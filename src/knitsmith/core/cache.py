"""Disk-backed cache of chunk results.

An entry is keyed by the chunk label, the digest of its source, the options
that influence evaluation, and a fingerprint chaining every earlier evaluated
chunk. Editing any predecessor therefore changes the key of every later
chunk. Each entry stores the serialised :class:`CapturedOutput`, the pickled
bindings the chunk created, and copies of its figures.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import hashlib
import importlib
import json
import logging
from pathlib import Path
import pickle
import shutil
from types import ModuleType
from typing import Any

from .assets import AssetRegistry
from .exceptions import AssetWriteError, CacheInconsistencyError
from .segments import CapturedOutput, CodeSegment, OutputKind, OutputUnit
from .user_dir import get_user_dir


__all__ = [
    "CACHE_NAMESPACE",
    "ROOT_FINGERPRINT",
    "CacheHit",
    "ChunkCache",
    "chain_fingerprint",
    "chunk_cache_key",
    "resolve_chunk_cache",
]

_log = logging.getLogger(__name__)

CACHE_NAMESPACE = "chunks"
_CACHE_FILENAME = "metadata.json"
_CACHE_VERSION = 1
ROOT_FINGERPRINT = hashlib.sha256(b"knitsmith").hexdigest()


def chain_fingerprint(previous: str, segment: CodeSegment, signature: Mapping[str, Any]) -> str:
    """Extend the predecessor fingerprint with one evaluated chunk."""
    payload = json.dumps(
        {"previous": previous, "digest": segment.digest, "options": dict(signature)},
        sort_keys=True,
    ).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def chunk_cache_key(
    segment: CodeSegment, fingerprint: str, signature: Mapping[str, Any]
) -> str:
    """Cache key for ``segment`` given the fingerprint of its predecessors."""
    payload = json.dumps(
        {
            "label": segment.label,
            "digest": segment.digest,
            "predecessors": fingerprint,
            "options": dict(signature),
        },
        sort_keys=True,
    ).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


@dataclass(slots=True)
class CacheHit:
    """Replayable cache entry."""

    output: CapturedOutput
    bindings: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ChunkCache:
    """Cache rooted at one directory, usually one per source document."""

    root: Path
    metadata_path: Path
    metadata: dict[str, Any]
    dirty: bool = False

    @classmethod
    def open(cls, root: Path) -> ChunkCache:
        root.mkdir(parents=True, exist_ok=True)
        metadata_path = root / _CACHE_FILENAME
        return cls(root=root, metadata_path=metadata_path, metadata=_load_metadata(metadata_path))

    def lookup(self, key: str, label: str, assets: AssetRegistry) -> CacheHit | None:
        """Return the cached result for ``key`` or ``None`` on a miss.

        Raises :class:`CacheInconsistencyError` when the entry exists but can
        no longer be replayed; the entry is discarded before raising.
        """
        payload = self._entries().get(key)
        if payload is None:
            return None
        if not isinstance(payload, dict) or payload.get("label") != label:
            self.discard(key)
            raise CacheInconsistencyError(f"Cache entry for chunk '{label}' is corrupt.")

        try:
            output = CapturedOutput.from_dict(payload["output"])
        except (KeyError, TypeError, ValueError) as exc:
            self.discard(key)
            raise CacheInconsistencyError(
                f"Cache entry for chunk '{label}' cannot be decoded."
            ) from exc

        unpicklable = payload.get("unpicklable") or []
        if unpicklable:
            self.discard(key)
            raise CacheInconsistencyError(
                f"Bindings {', '.join(sorted(unpicklable))} of chunk '{label}' were not cached."
            )

        bindings = self._load_bindings(key, label, payload)
        warnings = self._restore_assets(key, label, output, assets)
        output.cached = True
        return CacheHit(output=output, bindings=bindings, warnings=warnings)

    def store(
        self,
        key: str,
        output: CapturedOutput,
        bindings: Mapping[str, Any],
        assets: AssetRegistry,
    ) -> None:
        """Persist a chunk result; stale entries for the same label are dropped."""
        entries = self._entries()
        for stale_key, stale in list(entries.items()):
            if stale_key != key and isinstance(stale, dict) and stale.get("label") == output.label:
                self.discard(stale_key)

        stored: dict[str, Any] = {}
        modules: dict[str, str] = {}
        unpicklable: list[str] = []
        for name, value in bindings.items():
            if isinstance(value, ModuleType):
                modules[name] = value.__name__
                continue
            try:
                stored[name] = pickle.dumps(value)
            except Exception:  # noqa: BLE001 - pickling arbitrary user objects
                unpicklable.append(name)

        entry_dir = self.root / key
        if entry_dir.exists():
            shutil.rmtree(entry_dir, ignore_errors=True)
        entry_dir.mkdir(parents=True, exist_ok=True)

        bindings_name = None
        if stored:
            bindings_name = "bindings.pkl"
            (entry_dir / bindings_name).write_bytes(pickle.dumps(stored))

        figures: dict[str, str] = {}
        for unit in output.of_kind(OutputKind.IMAGE):
            source = assets.resolve(unit.payload)
            if not source.exists():
                continue
            copy_name = f"figure-{len(figures) + 1}{source.suffix}"
            shutil.copy2(source, entry_dir / copy_name)
            figures[unit.payload] = copy_name

        entries[key] = {
            "label": output.label,
            "output": output.to_dict(),
            "bindings": bindings_name,
            "modules": modules,
            "unpicklable": unpicklable,
            "figures": figures,
        }
        self.dirty = True

    def discard(self, key: str) -> None:
        """Remove a cache entry when it becomes invalid."""
        entries = self._entries()
        if key in entries:
            entries.pop(key, None)
            shutil.rmtree(self.root / key, ignore_errors=True)
            self.dirty = True

    def clear(self) -> None:
        """Drop every entry."""
        for key in list(self._entries()):
            self.discard(key)
        self.flush()

    def flush(self) -> None:
        """Persist metadata to disk when modified."""
        if not self.dirty:
            return

        payload = {"version": _CACHE_VERSION, "entries": self._entries()}
        tmp_path = self.metadata_path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
            tmp_path.replace(self.metadata_path)
            self.dirty = False
        except OSError:
            _log.warning("Unable to persist chunk cache metadata at %s", self.metadata_path)

    def __len__(self) -> int:
        return len(self._entries())

    def _load_bindings(self, key: str, label: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        name = payload.get("bindings")
        modules = payload.get("modules") or {}
        try:
            restored = {
                binding: importlib.import_module(module) for binding, module in modules.items()
            }
            if name:
                stored = pickle.loads((self.root / key / name).read_bytes())  # noqa: S301
                for binding, blob in stored.items():
                    restored[binding] = pickle.loads(blob)  # noqa: S301
        except Exception as exc:  # noqa: BLE001 - any restore failure invalidates
            self.discard(key)
            raise CacheInconsistencyError(
                f"Bindings of chunk '{label}' cannot be restored: {exc}"
            ) from exc
        return restored

    def _restore_assets(
        self, key: str, label: str, output: CapturedOutput, assets: AssetRegistry
    ) -> list[str]:
        """Copy cached figures into place.

        A figure that cannot be written at its destination is replaced by an
        inline error notice, as on a fresh run; the entry itself stays valid.
        """
        figures = self._entries()[key].get("figures") or {}
        sources: dict[str, Path] = {}
        for unit in output.of_kind(OutputKind.IMAGE):
            copy_name = figures.get(unit.payload)
            source = self.root / key / copy_name if copy_name else None
            if source is None or not source.exists():
                self.discard(key)
                raise CacheInconsistencyError(
                    f"Cached figure '{unit.payload}' of chunk '{label}' is missing."
                )
            sources[unit.payload] = source

        warnings: list[str] = []
        units: list[OutputUnit] = []
        for unit in output.units:
            if unit.kind is not OutputKind.IMAGE:
                units.append(unit)
                continue
            source = sources[unit.payload]
            try:
                assets.write(unit.payload, lambda target, src=source: shutil.copy2(src, target))
            except AssetWriteError as exc:
                warnings.append(str(exc))
                units.append(OutputUnit(OutputKind.ERROR, f"AssetWriteError: {exc}", notice=True))
            else:
                units.append(unit)
        output.units = units
        return warnings

    def _entries(self) -> dict[str, Any]:
        entries = self.metadata.setdefault("entries", {})
        if not isinstance(entries, dict):
            entries = {}
            self.metadata["entries"] = entries
        return entries


def _load_metadata(path: Path) -> dict[str, Any]:
    default: dict[str, Any] = {"version": _CACHE_VERSION, "entries": {}}
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return default

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return default

    if not isinstance(payload, dict) or payload.get("version") != _CACHE_VERSION:
        return default

    if not isinstance(payload.get("entries"), dict):
        payload["entries"] = {}
    return payload


def _document_namespace(source_path: Path | None) -> str:
    if source_path is None:
        return "anonymous"
    try:
        resolved = source_path.resolve()
    except OSError:
        resolved = source_path
    digest = hashlib.sha256(str(resolved).encode("utf-8")).hexdigest()[:16]
    return f"{source_path.stem}-{digest}"


def resolve_chunk_cache(source_path: Path | None, root: Path | None = None) -> ChunkCache:
    """Open the cache for a document, under the user cache root unless ``root`` is given."""
    base = root if root is not None else get_user_dir().cache_dir(CACHE_NAMESPACE)
    return ChunkCache.open(base / _document_namespace(source_path))
