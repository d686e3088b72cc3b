from __future__ import annotations

from pathlib import Path

import pytest

from knitsmith.api import (
    KnitRequest,
    KnitService,
    execute_document,
    knit_document,
    knit_text,
    parse_document,
    tangle_document,
)
from knitsmith.core.cache import ChunkCache
from knitsmith.core.debug import ConversionError
from knitsmith.core.segments import OutputKind


DOCUMENT = """---
title: Knitting
---

Intro paragraph.

```{python setup}
x = 5
```

```{python use}
x + 1
```
"""


def _write(tmp_path: Path, text: str, name: str = "report.Rmd") -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


class RecordingEmitter:
    debug_enabled = False

    def __init__(self) -> None:
        self.warnings: list[str] = []
        self.errors: list[str] = []
        self.events: list[tuple[str, dict]] = []

    def warning(self, message: str, exc: BaseException | None = None) -> None:
        self.warnings.append(message)

    def error(self, message: str, exc: BaseException | None = None) -> None:
        self.errors.append(message)

    def event(self, name: str, payload) -> None:
        self.events.append((name, dict(payload)))

    def names(self, event: str) -> list[str]:
        return [payload["label"] for name, payload in self.events if name == event]


@pytest.fixture(autouse=True)
def _isolated_cache(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("KNITSMITH_CACHE_DIR", str(tmp_path / "user-cache"))


def test_prose_then_assignment_then_expression(tmp_path: Path) -> None:
    response = knit_text(DOCUMENT, tmp_path)

    assert len(response.rendered.blocks) == len(response.document.segments) == 3
    prose, setup, use = response.outputs
    assert prose is None
    assert setup.units == []
    assert use.text == "6"
    assert response.output_path is None


def test_knit_document_writes_html(tmp_path: Path) -> None:
    source = _write(tmp_path, DOCUMENT)

    response = knit_document(source, tmp_path / "out")

    assert response.output_path == (tmp_path / "out" / "report.html").resolve()
    html = response.output_path.read_text(encoding="utf-8")
    assert "<h1 class=\"title\">Knitting</h1>" in html
    assert "## 6" in html
    assert html.index("Intro paragraph.") < html.index("## 6")


def test_knit_document_defaults_to_source_directory(tmp_path: Path) -> None:
    source = _write(tmp_path, DOCUMENT)

    response = knit_document(source, use_cache=False)

    assert response.output_path == (tmp_path / "report.html").resolve()


def test_format_override_writes_markdown(tmp_path: Path) -> None:
    source = _write(tmp_path, DOCUMENT)

    response = knit_document(source, tmp_path / "out", output_format="md_document")

    assert response.output_path.suffix == ".md"
    assert "```\n## 6\n```" in response.content


def test_invalid_format_override_is_rejected(tmp_path: Path) -> None:
    source = _write(tmp_path, DOCUMENT)

    with pytest.raises(ConversionError, match="Unsupported output format"):
        knit_document(source, output_format="pdf")


def test_figures_are_written_next_to_output(tmp_path: Path) -> None:
    text = "```{python plot}\nimport matplotlib.pyplot as plt\nplt.plot([1, 2])\n```\n"
    source = _write(tmp_path, text, "figs.Rmd")

    response = knit_document(source, tmp_path / "out")

    expected = (tmp_path / "out" / "figs_files" / "figure-html" / "plot-1.png").resolve()
    assert response.assets == [expected]
    assert expected.exists()
    assert 'src="figs_files/figure-html/plot-1.png"' in response.content


def test_failing_chunk_is_isolated(tmp_path: Path) -> None:
    text = "```{python a}\nx = 1\n```\n\n```{python b}\n1/0\n```\n\n```{python c}\nx + 1\n```\n"
    emitter = RecordingEmitter()

    response = knit_text(text, tmp_path, emitter=emitter)

    _, broken, healthy = response.outputs
    assert broken.failed is True
    assert broken.units[0].payload == "ZeroDivisionError: division by zero"
    assert healthy.text == "2"
    assert response.failed_labels == ["b"]
    assert response.rendered.blocks[1].failed is True
    assert emitter.names("chunk_failed") == ["b"]


def test_ieee_division_flows_to_later_chunk(tmp_path: Path) -> None:
    text = "```{python a, ieee=true}\ny = 1/0\n```\n\n```{python b}\nprint(y)\n```\n"

    response = knit_text(text, tmp_path)

    assert response.outputs[1].units[0].kind is OutputKind.TEXT
    assert response.outputs[1].text == "inf"


def test_cached_rerun_is_identical(tmp_path: Path) -> None:
    text = (
        "```{python slow, cache=true}\n"
        "import math\n"
        "data = [n * n for n in range(4)]\n"
        "print(data)\n"
        "```\n\n"
        "```{python after}\nmath.sqrt(data[-1])\n```\n"
    )
    source = _write(tmp_path, text)
    request = KnitRequest(source=source, output_dir=tmp_path / "out", cache_dir=tmp_path / "c")

    first = KnitService().knit(request)
    emitter = RecordingEmitter()
    request.emitter = emitter
    second = KnitService().knit(request)

    assert first.cached_labels == []
    assert second.cached_labels == ["slow"]
    assert emitter.names("chunk_cached") == ["slow"]
    assert emitter.names("chunk_execute") == ["after"]
    assert [o.to_dict() for o in first.outputs] == [o.to_dict() for o in second.outputs]
    assert second.outputs[1].text == "3.0"


def test_editing_a_predecessor_invalidates_cache(tmp_path: Path) -> None:
    cache_dir = tmp_path / "c"
    original = "```{python a}\nbase = 1\n```\n\n```{python b, cache=true}\nbase + 1\n```\n"
    source = _write(tmp_path, original)
    KnitService().knit(KnitRequest(source=source, cache_dir=cache_dir))

    source.write_text(original.replace("base = 1", "base = 10"), encoding="utf-8")
    response = KnitService().knit(KnitRequest(source=source, cache_dir=cache_dir))

    assert response.cached_labels == []
    assert response.outputs[1].text == "11"


def test_no_cache_request_executes_everything(tmp_path: Path) -> None:
    source = _write(tmp_path, "```{python a, cache=true}\n1\n```\n")
    cache_dir = tmp_path / "c"
    KnitService().knit(KnitRequest(source=source, cache_dir=cache_dir))

    response = KnitService().knit(KnitRequest(source=source, cache_dir=cache_dir, use_cache=False))

    assert response.cached_labels == []


def test_clear_cache_drops_entries(tmp_path: Path) -> None:
    source = _write(tmp_path, "```{python a, cache=true}\n1\n```\n")
    cache_dir = tmp_path / "c"
    KnitService().knit(KnitRequest(source=source, cache_dir=cache_dir))

    response = KnitService().knit(KnitRequest(source=source, cache_dir=cache_dir, clear_cache=True))

    assert response.cached_labels == []


def test_inconsistent_cache_entry_is_re_executed(tmp_path: Path) -> None:
    text = "```{python a, cache=true}\nfn = lambda: 41\n```\n\n```{python b}\nfn() + 1\n```\n"
    source = _write(tmp_path, text)
    cache_dir = tmp_path / "c"
    KnitService().knit(KnitRequest(source=source, cache_dir=cache_dir))
    emitter = RecordingEmitter()

    response = KnitService().knit(
        KnitRequest(source=source, cache_dir=cache_dir, emitter=emitter)
    )

    assert response.cached_labels == []
    assert emitter.names("cache_invalidated") == ["a"]
    assert response.outputs[1].text == "42"


def test_execute_document_uses_explicit_cache(tmp_path: Path) -> None:
    document = parse_document(
        "```{python a, cache=true}\nvalue = 3\n```\n\n```{python b}\nvalue\n```\n"
    )
    cache = ChunkCache.open(tmp_path / "cache")

    execute_document(document, output_root=tmp_path, cache=cache)
    outputs = execute_document(document, output_root=tmp_path, cache=cache)

    assert outputs[0].cached is True
    assert outputs[1].text == "3"


def test_unterminated_fence_is_reported(tmp_path: Path) -> None:
    source = _write(tmp_path, "Intro\n\n```{python open}\nprint('still runs')\n")
    emitter = RecordingEmitter()

    response = knit_document(source, emitter=emitter)

    assert len(response.document.issues) == 1
    assert response.outputs[-1].text == "still runs"
    assert any("never closed" in message for message in emitter.warnings)


def test_strict_mode_raises_conversion_error(tmp_path: Path) -> None:
    source = _write(tmp_path, "```{python open}\nx = 1\n")
    emitter = RecordingEmitter()

    with pytest.raises(ConversionError, match="never closed"):
        knit_document(source, strict=True, emitter=emitter)

    assert emitter.errors


def test_missing_input_raises_conversion_error(tmp_path: Path) -> None:
    with pytest.raises(ConversionError, match="Unable to read"):
        knit_document(tmp_path / "missing.Rmd")


def test_tangle_document_extracts_evaluated_python(tmp_path: Path) -> None:
    text = (
        "```{python setup}\nx = 1\n```\n\n"
        "```{python skipped, eval=false}\nnever()\n```\n\n"
        "```{r}\nsummary(cars)\n```\n\n"
        "```{python}\nprint(x)\n```\n"
    )
    source = _write(tmp_path, text)
    target = tmp_path / "out" / "report.py"

    script = tangle_document(source, target)

    assert script == "# %% setup\nx = 1\n\n# %% unnamed-chunk-2\nprint(x)\n"
    assert target.read_text(encoding="utf-8") == script


def test_unreadable_encoding_raises_conversion_error(tmp_path: Path) -> None:
    source = tmp_path / "latin.Rmd"
    source.write_bytes(b"caf\xe9\n")

    with pytest.raises(ConversionError, match="Unable to read"):
        knit_document(source)


def test_cached_chunk_replays_in_place_mutation(tmp_path: Path) -> None:
    text = (
        "```{python load, cache=true}\nitems = []\n```\n\n"
        "```{python extend, cache=true}\nitems.append('a')\nitems.append('b')\n```\n\n"
        "```{python show}\nprint(items)\n```\n"
    )
    source = _write(tmp_path, text)
    request = KnitRequest(source=source, output_dir=tmp_path / "out", cache_dir=tmp_path / "c")

    first = KnitService().knit(request)
    second = KnitService().knit(request)

    assert second.cached_labels == ["load", "extend"]
    assert first.outputs[2].text == second.outputs[2].text == "['a', 'b']"


def test_cached_figure_write_failure_becomes_notice(tmp_path: Path) -> None:
    text = (
        "```{python plot, cache=true}\nimport matplotlib.pyplot as plt\nplt.plot([1, 2])\n```\n\n"
        "```{python after}\nprint('after')\n```\n"
    )
    source = _write(tmp_path, text)
    cache_dir = tmp_path / "c"
    KnitService().knit(KnitRequest(source=source, output_dir=tmp_path / "a", cache_dir=cache_dir))

    blocked = tmp_path / "b"
    blocked.mkdir()
    (blocked / "report_files").write_text("not a directory", encoding="utf-8")
    emitter = RecordingEmitter()
    response = KnitService().knit(
        KnitRequest(source=source, output_dir=blocked, cache_dir=cache_dir, emitter=emitter)
    )

    plot, after = response.outputs
    assert response.cached_labels == ["plot"]
    assert plot.of_kind(OutputKind.IMAGE) == []
    (notice,) = plot.of_kind(OutputKind.ERROR)
    assert notice.notice is True
    assert "report_files" in notice.payload
    assert after.text == "after"
    assert any("report_files" in message for message in emitter.warnings)

    replayed = KnitService().knit(
        KnitRequest(source=source, output_dir=tmp_path / "c2", cache_dir=cache_dir)
    )
    assert replayed.cached_labels == ["plot"]
    assert len(replayed.outputs[0].of_kind(OutputKind.IMAGE)) == 1
