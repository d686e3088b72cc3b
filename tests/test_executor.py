from __future__ import annotations

import ast
import math
from pathlib import Path

import pytest

from knitsmith.core.assets import AssetRegistry
from knitsmith.core.environment import EvaluationEnvironment
from knitsmith.core.exceptions import AssetWriteError, EvaluationError
from knitsmith.core.executor import SegmentExecutor, ieee_truediv, mutated_names
from knitsmith.core.segments import CodeSegment, OutputKind, OutputUnit


def _segment(source: str, label: str = "chunk", language: str = "python", **options) -> CodeSegment:
    return CodeSegment(language=language, source=source, label=label, options=options)


@pytest.fixture
def executor(tmp_path: Path) -> SegmentExecutor:
    assets = AssetRegistry(tmp_path, stem="doc")
    return SegmentExecutor(EvaluationEnvironment(), assets)


def test_bindings_flow_to_later_chunks(executor: SegmentExecutor) -> None:
    first = executor.execute(_segment("x = 5", "a"))
    second = executor.execute(_segment("x + 1", "b"))

    assert first.units == []
    assert first.bindings == ["x"]
    assert second.units == [OutputUnit(OutputKind.TEXT, "6")]
    assert second.text == "6"


def test_streams_are_captured_in_emission_order(executor: SegmentExecutor) -> None:
    source = "\n".join(
        [
            "import sys, warnings",
            "print('one')",
            "print('note', file=sys.stderr)",
            "warnings.warn('careful')",
            "print('two')",
        ]
    )

    captured = executor.execute(_segment(source))

    assert [unit.kind for unit in captured.units] == [
        OutputKind.TEXT,
        OutputKind.MESSAGE,
        OutputKind.WARNING,
        OutputKind.TEXT,
    ]
    assert captured.units[0].payload == "one"
    assert captured.units[1].payload == "note"
    assert captured.units[2].payload == "UserWarning: careful"
    assert captured.failed is False


def test_only_non_none_expressions_are_echoed(executor: SegmentExecutor) -> None:
    captured = executor.execute(_segment("None\n'text'\n[1, 2]"))

    assert [unit.payload for unit in captured.units] == ["'text'", "[1, 2]"]


def test_failure_stops_chunk_but_keeps_partial_bindings(executor: SegmentExecutor) -> None:
    source = "a = 1\nprint('before')\nraise ValueError('boom')\nprint('after')"

    captured = executor.execute(_segment(source, "broken"))

    assert captured.failed is True
    assert [unit.kind for unit in captured.units] == [OutputKind.TEXT, OutputKind.ERROR]
    assert captured.units[-1].payload == "ValueError: boom"
    assert isinstance(captured.error, EvaluationError)
    assert captured.error.label == "broken"
    assert captured.error.line == 3
    assert executor.environment["a"] == 1


def test_failing_chunk_does_not_affect_next_chunk(executor: SegmentExecutor) -> None:
    broken = executor.execute(_segment("undefined_name + 1", "broken"))
    healthy = executor.execute(_segment("print('still running')", "healthy"))

    assert broken.failed is True
    assert "NameError" in broken.units[0].payload
    assert healthy.failed is False
    assert healthy.text == "still running"


def test_syntax_error_marks_chunk_failed(executor: SegmentExecutor) -> None:
    captured = executor.execute(_segment("def broken(:\n    pass"))

    assert captured.failed is True
    assert captured.units[0].kind is OutputKind.ERROR
    assert "SyntaxError" in captured.units[0].payload


def test_division_by_zero_fails_without_ieee(executor: SegmentExecutor) -> None:
    captured = executor.execute(_segment("y = 1/0"))

    assert captured.failed is True
    assert captured.units[0].payload == "ZeroDivisionError: division by zero"


def test_ieee_division_yields_infinity(executor: SegmentExecutor) -> None:
    first = executor.execute(_segment("y = 1/0", "a", ieee=True))
    second = executor.execute(_segment("print(y)", "b"))

    assert first.failed is False
    assert first.units == []
    assert second.units == [OutputUnit(OutputKind.TEXT, "inf")]


def test_ieee_augmented_division(executor: SegmentExecutor) -> None:
    captured = executor.execute(_segment("z = -3\nz /= 0\nz", ieee=True))

    assert captured.text == "-inf"


def test_ieee_truediv_semantics() -> None:
    assert ieee_truediv(6, 3) == 2
    assert ieee_truediv(1, 0) == math.inf
    assert ieee_truediv(-1, 0) == -math.inf
    assert ieee_truediv(1, -0.0) == -math.inf
    assert math.isnan(ieee_truediv(0, 0))
    with pytest.raises(ZeroDivisionError):
        ieee_truediv(_NoFloat(), 0)


class _NoFloat:
    def __truediv__(self, other):
        raise ZeroDivisionError("custom")


def test_results_asis_emits_raw_markup(executor: SegmentExecutor) -> None:
    captured = executor.execute(_segment("'<b>hi</b>'", results="asis"))

    assert captured.units == [OutputUnit(OutputKind.RAW, "<b>hi</b>")]


def test_default_results_keep_repr_text(executor: SegmentExecutor) -> None:
    captured = executor.execute(_segment("'<b>hi</b>'"))

    assert captured.units == [OutputUnit(OutputKind.TEXT, "'<b>hi</b>'")]


def test_html_repr_objects_become_raw_units(executor: SegmentExecutor) -> None:
    source = "\n".join(
        [
            "class Widget:",
            "    def _repr_html_(self):",
            "        return '<div class=\"widget\"></div>'",
            "Widget()",
        ]
    )

    captured = executor.execute(_segment(source))

    assert captured.units == [OutputUnit(OutputKind.RAW, '<div class="widget"></div>')]


def test_eval_false_skips_execution(executor: SegmentExecutor) -> None:
    captured = executor.execute(_segment("raise SystemExit(1)", eval=False))

    assert captured.evaluated is False
    assert captured.units == []
    assert captured.failed is False


def test_document_defaults_apply_below_chunk_options(tmp_path: Path) -> None:
    executor = SegmentExecutor(
        EvaluationEnvironment(),
        AssetRegistry(tmp_path),
        defaults={"eval": False},
    )

    skipped = executor.execute(_segment("print('no')"))
    forced = executor.execute(_segment("print('yes')", eval=True))

    assert skipped.evaluated is False
    assert forced.text == "yes"


def test_unknown_language_is_not_evaluated(executor: SegmentExecutor) -> None:
    captured = executor.execute(_segment("summary(cars)", language="r"))

    assert captured.evaluated is False
    assert captured.units[0].kind is OutputKind.WARNING
    assert "'r'" in captured.units[0].payload


def test_figures_are_written_per_chunk(executor: SegmentExecutor, tmp_path: Path) -> None:
    source = "\n".join(
        [
            "import matplotlib.pyplot as plt",
            "plt.plot([1, 2, 3])",
            "plt.figure()",
            "plt.plot([3, 2, 1])",
        ]
    )

    captured = executor.execute(_segment(source, "my plot"))

    images = captured.of_kind(OutputKind.IMAGE)
    assert [unit.payload for unit in images] == [
        "doc_files/figure-html/my-plot-1.png",
        "doc_files/figure-html/my-plot-2.png",
    ]
    assert captured.of_kind(OutputKind.TEXT) == []
    for unit in images:
        assert (tmp_path / unit.payload).exists()


def test_figures_do_not_leak_into_following_chunks(executor: SegmentExecutor) -> None:
    executor.execute(_segment("import matplotlib.pyplot as plt\nplt.plot([1])", "a"))
    captured = executor.execute(_segment("1 + 1", "b"))

    assert captured.of_kind(OutputKind.IMAGE) == []


def test_asset_write_failure_becomes_error_notice(
    executor: SegmentExecutor, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _fail(self, key, writer):
        raise AssetWriteError(f"Unable to write asset '{key}': disk full")

    monkeypatch.setattr(AssetRegistry, "write", _fail)

    captured = executor.execute(_segment("import matplotlib.pyplot as plt\nplt.plot([1])"))

    assert captured.of_kind(OutputKind.IMAGE) == []
    (error,) = captured.of_kind(OutputKind.ERROR)
    assert error.notice is True
    assert "disk full" in error.payload
    assert captured.failed is False


def test_chunk_failure_emits_event(tmp_path: Path) -> None:
    events: list[tuple[str, dict]] = []

    class Emitter:
        debug_enabled = False

        def warning(self, message, exc=None) -> None:
            return

        def error(self, message, exc=None) -> None:
            return

        def event(self, name, payload) -> None:
            events.append((name, dict(payload)))

    executor = SegmentExecutor(EvaluationEnvironment(), AssetRegistry(tmp_path), emitter=Emitter())
    executor.execute(_segment("1/0", "zero"))

    assert events[0][0] == "chunk_failed"
    assert events[0][1]["label"] == "zero"


def test_failure_diagnostics_stay_out_of_captured_streams(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    class PrintingEmitter:
        debug_enabled = False

        def warning(self, message, exc=None) -> None:
            print(f"warning: {message}")

        def error(self, message, exc=None) -> None:
            print(f"error: {message}")

        def event(self, name, payload) -> None:
            print(f"event: {name} {payload['label']}")

    executor = SegmentExecutor(
        EvaluationEnvironment(), AssetRegistry(tmp_path), emitter=PrintingEmitter()
    )

    captured = executor.execute(_segment("print('before')\n1/0", "boom"))

    assert [unit.kind for unit in captured.units] == [OutputKind.TEXT, OutputKind.ERROR]
    assert captured.units[0].payload.strip() == "before"
    assert captured.units[1].payload == "ZeroDivisionError: division by zero"
    assert "event: chunk_failed boom" in capsys.readouterr().out


def test_figure_diagnostics_are_emitted_after_the_chunk(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    class PrintingEmitter:
        debug_enabled = False

        def warning(self, message, exc=None) -> None:
            print(f"warning: {message}")

        def error(self, message, exc=None) -> None:
            print(f"error: {message}")

        def event(self, name, payload) -> None:
            print(f"event: {name}")

    executor = SegmentExecutor(
        EvaluationEnvironment(), AssetRegistry(tmp_path, stem="doc"), emitter=PrintingEmitter()
    )

    captured = executor.execute(
        _segment("import matplotlib.pyplot as plt\nplt.plot([1])\nprint('done')", "fig")
    )

    assert [unit.payload.strip() for unit in captured.of_kind(OutputKind.TEXT)] == ["done"]
    assert "event: asset_write" in capsys.readouterr().out


def test_in_place_mutation_is_reported_as_binding(executor: SegmentExecutor) -> None:
    executor.execute(_segment("items = []\nconfig = {}\nuntouched = 1", "load"))

    captured = executor.execute(
        _segment("items.append('a')\nconfig['mode'] = 'fast'\nlen(untouched.__class__.__name__)")
    )

    assert sorted(captured.bindings) == ["config", "items"]


def test_mutated_names_covers_stores_deletes_and_mutator_calls() -> None:
    tree = ast.parse(
        "\n".join(
            [
                "rows.append(1)",
                "table['k'] = 2",
                "obj.attr.count += 1",
                "del frame['col']",
                "opts.update(a=1)",
                "seen = set()",
                "print(values.copy())",
                "make().append(3)",
            ]
        )
    )

    assert mutated_names(tree) == {"rows", "table", "obj", "frame", "opts"}
