from __future__ import annotations

from knitsmith.core.environment import EvaluationEnvironment


def test_environment_tracks_new_and_rebound_names() -> None:
    environment = EvaluationEnvironment({"kept": 1, "rebound": [1]})
    snapshot = environment.snapshot()

    exec("created = 2\nrebound = [2]\nkept", environment.namespace)  # noqa: S102

    assert environment.changed_since(snapshot) == ["rebound", "created"]
    assert environment["created"] == 2


def test_names_hide_reserved_entries() -> None:
    environment = EvaluationEnvironment()
    environment.set("x", 5)

    assert environment.names() == ["x"]
    assert "x" in environment
    assert "__builtins__" in environment.namespace
    assert environment.get("missing", "default") == "default"


def test_apply_and_export_round_trip_selected_bindings() -> None:
    source = EvaluationEnvironment({"a": 1, "b": 2})
    target = EvaluationEnvironment()

    target.apply(source.export(["a", "missing"]))
    target.apply({"__name__": "hijacked"})

    assert target.names() == ["a"]
    assert target["a"] == 1
    assert target.namespace["__name__"] == "__knitsmith__"


def test_touched_names_are_reported_while_still_bound() -> None:
    environment = EvaluationEnvironment({"rows": [], "gone": 1, "same": 2})
    snapshot = environment.snapshot()

    exec("rows.append(1)\ndel gone", environment.namespace)  # noqa: S102

    assert environment.changed_since(snapshot) == []
    assert environment.changed_since(snapshot, touched={"rows", "gone"}) == ["rows"]
