"""Shared evaluation namespace carried across chunks."""

from __future__ import annotations

import builtins
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any


__all__ = ["BindingSnapshot", "EvaluationEnvironment"]

_RESERVED = frozenset({"__builtins__", "__name__", "__doc__"})


@dataclass(slots=True, frozen=True)
class BindingSnapshot:
    """Identity snapshot of the namespace used to detect new bindings."""

    identities: Mapping[str, int] = field(default_factory=dict)


class EvaluationEnvironment:
    """Namespace shared by every chunk of one knit run.

    The environment is never reset: a chunk observes every binding made by
    earlier chunks, including partial bindings left by a chunk that failed.
    """

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._namespace: dict[str, Any] = {
            "__builtins__": builtins,
            "__name__": "__knitsmith__",
            "__doc__": None,
        }
        if initial:
            self._namespace.update(initial)

    @property
    def namespace(self) -> dict[str, Any]:
        """Mutable globals mapping handed to ``exec``."""
        return self._namespace

    def get(self, name: str, default: Any = None) -> Any:
        return self._namespace.get(name, default)

    def set(self, name: str, value: Any) -> None:
        self._namespace[name] = value

    def __getitem__(self, name: str) -> Any:
        return self._namespace[name]

    def __contains__(self, name: object) -> bool:
        return name in self._namespace

    def names(self) -> list[str]:
        """Return user-visible binding names in insertion order."""
        return [name for name in self._namespace if name not in _RESERVED]

    def snapshot(self) -> BindingSnapshot:
        return BindingSnapshot(
            {name: id(value) for name, value in self._namespace.items() if name not in _RESERVED}
        )

    def changed_since(
        self, snapshot: BindingSnapshot, *, touched: Iterable[str] = ()
    ) -> list[str]:
        """Return names created or rebound since ``snapshot`` was taken.

        ``touched`` names are reported whenever they are still bound, since
        their objects may have been mutated in place without being rebound.
        """
        touched = set(touched)
        changed: list[str] = []
        for name, value in self._namespace.items():
            if name in _RESERVED:
                continue
            if name in touched or snapshot.identities.get(name) != id(value):
                changed.append(name)
        return changed

    def apply(self, bindings: Mapping[str, Any]) -> None:
        """Install bindings recorded by an earlier (cached) run."""
        for name, value in bindings.items():
            if name in _RESERVED:
                continue
            self._namespace[name] = value

    def export(self, names: Iterable[str]) -> dict[str, Any]:
        return {name: self._namespace[name] for name in names if name in self._namespace}
