"""Execute code chunks against the shared evaluation environment.

Each top-level statement runs on its own so that console output, warnings,
and auto-printed expression values are captured in emission order and a
failing statement stops only the rest of its chunk. Figures opened through
matplotlib are written once the chunk finishes, so statements can keep
drawing on the same figure.
"""

from __future__ import annotations

import ast
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager, redirect_stderr, redirect_stdout
import io
import logging
import math
import os
from pathlib import Path
import traceback
from typing import Any
import warnings

from .assets import AssetRegistry
from .debug import ensure_emitter, record_event
from .diagnostics import DiagnosticEmitter
from .environment import EvaluationEnvironment
from .exceptions import AssetWriteError, EvaluationError
from .options import ChunkOptions, resolve_options
from .segments import CapturedOutput, CodeSegment, OutputKind


__all__ = [
    "IEEE_DIVIDE_NAME",
    "PYTHON_ENGINES",
    "SegmentExecutor",
    "ieee_truediv",
    "mutated_names",
]

_log = logging.getLogger(__name__)

PYTHON_ENGINES = frozenset({"python", "py", "python3"})
IEEE_DIVIDE_NAME = "__knitsmith_truediv__"


def ieee_truediv(left: Any, right: Any) -> Any:
    """True division returning ``inf``/``nan`` instead of raising on zero."""
    try:
        return left / right
    except ZeroDivisionError:
        try:
            numerator = float(left)
            denominator = float(right)
        except (TypeError, ValueError):
            numerator = denominator = None
        if numerator is None or denominator is None:
            raise
        if numerator == 0 or math.isnan(numerator):
            return math.nan
        return math.copysign(math.inf, numerator) * math.copysign(1.0, denominator)


class _IeeeDivision(ast.NodeTransformer):
    """Rewrite ``a / b`` (and ``name /= b``) into :func:`ieee_truediv` calls."""

    @staticmethod
    def _call(left: ast.expr, right: ast.expr) -> ast.Call:
        return ast.Call(
            func=ast.Name(id=IEEE_DIVIDE_NAME, ctx=ast.Load()),
            args=[left, right],
            keywords=[],
        )

    def visit_BinOp(self, node: ast.BinOp) -> ast.AST:
        self.generic_visit(node)
        if isinstance(node.op, ast.Div):
            return ast.copy_location(self._call(node.left, node.right), node)
        return node

    def visit_AugAssign(self, node: ast.AugAssign) -> ast.AST:
        self.generic_visit(node)
        if isinstance(node.op, ast.Div) and isinstance(node.target, ast.Name):
            load = ast.Name(id=node.target.id, ctx=ast.Load())
            assign = ast.Assign(targets=[node.target], value=self._call(load, node.value))
            return ast.copy_location(assign, node)
        return node


class _StreamRecorder:
    """Collect stdout, stderr, and warnings into ordered output units."""

    def __init__(self, captured: CapturedOutput) -> None:
        self.captured = captured
        self._kind: OutputKind | None = None
        self._buffer: list[str] = []

    def write(self, kind: OutputKind, text: str) -> None:
        if self._kind is not kind:
            self.flush()
            self._kind = kind
        self._buffer.append(text)

    def flush(self) -> None:
        if self._buffer and self._kind is not None:
            self.captured.append(self._kind, "".join(self._buffer))
        self._buffer = []
        self._kind = None

    def showwarning(
        self,
        message: Warning | str,
        category: type[Warning],
        filename: str,
        lineno: int,
        file: Any = None,
        line: str | None = None,
    ) -> None:
        self.flush()
        self.captured.append(OutputKind.WARNING, f"{category.__name__}: {message}")


class _StreamProxy(io.TextIOBase):
    def __init__(self, recorder: _StreamRecorder, kind: OutputKind) -> None:
        super().__init__()
        self._recorder = recorder
        self._kind = kind

    def writable(self) -> bool:
        return True

    def write(self, text: str) -> int:
        if text:
            self._recorder.write(self._kind, text)
        return len(text)


@contextmanager
def _working_directory(path: Path | None) -> Iterator[None]:
    if path is None:
        yield
        return
    previous = Path.cwd()
    os.chdir(path)
    try:
        yield
    finally:
        os.chdir(previous)


def _load_pyplot() -> Any:
    import matplotlib

    if matplotlib.get_backend().lower() != "agg":
        matplotlib.use("Agg", force=True)
    import matplotlib.pyplot as plt

    return plt


def _figure_of(value: Any) -> Any | None:
    """Return the matplotlib figure behind ``value`` when it is a chart object."""
    from matplotlib.figure import Figure

    if isinstance(value, Figure):
        return value
    if isinstance(value, (list, tuple)) and value:
        # ``plt.plot`` and friends return lists of artists.
        figures = [_figure_of(item) for item in value]
        if all(figure is not None and figure is figures[0] for figure in figures):
            return figures[0]
        return None
    candidate = getattr(value, "figure", None)
    if isinstance(candidate, Figure):
        return candidate
    return None


_MUTATING_METHODS = frozenset(
    {
        "add",
        "append",
        "clear",
        "discard",
        "extend",
        "insert",
        "pop",
        "popitem",
        "remove",
        "reverse",
        "setdefault",
        "sort",
        "update",
    }
)


def _root_name(node: ast.expr) -> str | None:
    while isinstance(node, (ast.Attribute, ast.Subscript)):
        node = node.value
    return node.id if isinstance(node, ast.Name) else None


def mutated_names(tree: ast.AST) -> set[str]:
    """Names whose objects a chunk may change in place.

    Covers item and attribute stores or deletions (``data["k"] = v``,
    ``obj.attr += 1``, ``del frame["col"]``) and calls to the usual
    container mutators (``items.append(x)``).
    """
    names: set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, (ast.Attribute, ast.Subscript)) and isinstance(
            node.ctx, (ast.Store, ast.Del)
        ):
            root = _root_name(node)
        elif (
            isinstance(node, ast.Call)
            and isinstance(node.func, ast.Attribute)
            and node.func.attr in _MUTATING_METHODS
        ):
            root = _root_name(node.func.value)
        else:
            continue
        if root is not None:
            names.add(root)
    return names


def _format_exception(exc: BaseException) -> str:
    return "".join(traceback.format_exception_only(type(exc), exc)).rstrip()


class SegmentExecutor:
    """Run code segments and capture their outputs."""

    def __init__(
        self,
        environment: EvaluationEnvironment,
        assets: AssetRegistry,
        *,
        defaults: Mapping[str, Any] | None = None,
        output_format: str = "html",
        working_dir: Path | None = None,
        emitter: DiagnosticEmitter | None = None,
    ) -> None:
        self.environment = environment
        self.assets = assets
        self.defaults = dict(defaults or {})
        self.output_format = output_format
        self.working_dir = working_dir
        self.emitter = ensure_emitter(emitter)
        self._deferred: list[Callable[[], None]] = []

    def options_for(self, segment: CodeSegment) -> ChunkOptions:
        """Resolve options: chunk header over document defaults over system defaults."""
        return resolve_options(self.defaults, segment.options)

    def execute(
        self, segment: CodeSegment, options: ChunkOptions | None = None
    ) -> CapturedOutput:
        """Execute ``segment`` and return its captured outputs."""
        options = options or self.options_for(segment)
        captured = CapturedOutput(label=segment.label)

        if not options.eval:
            captured.evaluated = False
            return captured

        if segment.language not in PYTHON_ENGINES:
            captured.evaluated = False
            captured.append(
                OutputKind.WARNING,
                f"No engine available for language '{segment.language}'; chunk not evaluated.",
            )
            return captured

        filename = f"<chunk {segment.label}>"
        self._deferred = []
        try:
            tree = ast.parse(segment.source, filename=filename, mode="exec")
        except SyntaxError as exc:
            self._record_failure(segment, captured, exc, line=exc.lineno)
            self._flush_diagnostics()
            return captured

        if options.ieee:
            tree = ast.fix_missing_locations(_IeeeDivision().visit(tree))
            self.environment.set(IEEE_DIVIDE_NAME, ieee_truediv)

        snapshot = self.environment.snapshot()
        recorder = _StreamRecorder(captured)
        plt = _load_pyplot()
        open_before = set(plt.get_fignums())
        saved: list[Any] = []

        rc_overrides: dict[str, Any] = {}
        if options.fig_width or options.fig_height:
            default_width, default_height = plt.rcParams["figure.figsize"]
            rc_overrides["figure.figsize"] = (
                options.fig_width or default_width,
                options.fig_height or default_height,
            )

        with (
            _working_directory(self.working_dir),
            plt.rc_context(rc_overrides),
            warnings.catch_warnings(),
            redirect_stdout(_StreamProxy(recorder, OutputKind.TEXT)),
            redirect_stderr(_StreamProxy(recorder, OutputKind.MESSAGE)),
        ):
            warnings.simplefilter("always")
            warnings.filterwarnings("ignore", message=".*non-interactive.*")
            warnings.showwarning = recorder.showwarning

            statements = tree.body
            for position, statement in enumerate(statements):
                final = position == len(statements) - 1
                try:
                    value, has_value = self._run_statement(statement, filename)
                except (Exception, SystemExit) as exc:
                    recorder.flush()
                    self._record_failure(segment, captured, exc, line=statement.lineno)
                    break
                recorder.flush()
                if has_value and value is not None:
                    self._emit_value(value, captured, options, final=final, saved=saved)

            recorder.flush()
            self._collect_figures(plt, open_before, segment, captured, options, saved)

        # Diagnostics must not reach the emitter while the chunk owns the streams.
        self._flush_diagnostics()
        captured.bindings = self.environment.changed_since(
            snapshot, touched=mutated_names(tree)
        )
        return captured

    def _defer(self, action: Callable[[], None]) -> None:
        self._deferred.append(action)

    def _flush_diagnostics(self) -> None:
        pending, self._deferred = self._deferred, []
        for action in pending:
            action()

    def _run_statement(self, statement: ast.stmt, filename: str) -> tuple[Any, bool]:
        namespace = self.environment.namespace
        if isinstance(statement, ast.Expr):
            code = compile(ast.Expression(statement.value), filename, "eval")
            return eval(code, namespace), True  # noqa: S307
        module = ast.Module(body=[statement], type_ignores=[])
        exec(compile(module, filename, "exec"), namespace)  # noqa: S102
        return None, False

    def _emit_value(
        self,
        value: Any,
        captured: CapturedOutput,
        options: ChunkOptions,
        *,
        final: bool,
        saved: list[Any],
    ) -> None:
        """Classify one expression result into exactly one output unit."""
        figure = _figure_of(value)
        if figure is not None:
            if not any(figure is entry for entry in saved):
                saved.append(figure)
            return

        if options.asis and final:
            captured.append(OutputKind.RAW, str(value))
            return

        markup = self._rich_markup(value, captured)
        if markup is not None:
            captured.append(OutputKind.RAW, markup)
            return

        try:
            text = repr(value)
        except Exception as exc:  # noqa: BLE001 - user object repr
            captured.append(OutputKind.ERROR, _format_exception(exc))
            return
        captured.append(OutputKind.TEXT, text)

    def _rich_markup(self, value: Any, captured: CapturedOutput) -> str | None:
        if isinstance(value, type):
            return None
        methods = ["_repr_html_"]
        if self.output_format == "markdown":
            methods.insert(0, "_repr_markdown_")
        for name in methods:
            method = getattr(value, name, None)
            if not callable(method):
                continue
            try:
                markup = method()
            except Exception as exc:  # noqa: BLE001 - user object hook
                captured.append(
                    OutputKind.WARNING,
                    f"{type(value).__name__}.{name}() failed: {_format_exception(exc)}",
                )
                continue
            if isinstance(markup, str):
                return markup
        return None

    def _collect_figures(
        self,
        plt: Any,
        open_before: set[int],
        segment: CodeSegment,
        captured: CapturedOutput,
        options: ChunkOptions,
        saved: list[Any],
    ) -> None:
        figures = list(saved)
        for number in plt.get_fignums():
            if number in open_before:
                continue
            figure = plt.figure(number)
            if not any(figure is entry for entry in figures):
                figures.append(figure)

        for index, figure in enumerate(figures, start=1):
            key = self.assets.figure_key(segment.label, index)
            try:
                path = self.assets.write(
                    key,
                    lambda target, fig=figure: fig.savefig(
                        target, dpi=options.dpi, bbox_inches="tight"
                    ),
                )
            except AssetWriteError as exc:
                self._defer(lambda exc=exc: self.emitter.warning(str(exc), exc))
                captured.append(OutputKind.ERROR, f"AssetWriteError: {exc}", notice=True)
            else:
                payload = {"label": segment.label, "path": key}
                self._defer(
                    lambda payload=payload: record_event(self.emitter, "asset_write", payload)
                )
                _log.debug("figure for chunk %s written to %s", segment.label, path)
                captured.append(OutputKind.IMAGE, key)
            finally:
                plt.close(figure)

    def _record_failure(
        self,
        segment: CodeSegment,
        captured: CapturedOutput,
        exc: BaseException,
        *,
        line: int | None,
    ) -> None:
        message = _format_exception(exc)
        error = EvaluationError(message, label=segment.label, line=line)
        error.__cause__ = exc
        captured.failed = True
        captured.error = error
        captured.append(OutputKind.ERROR, message)
        payload = {"label": segment.label, "line": line, "error": message}
        self._defer(lambda: record_event(self.emitter, "chunk_failed", payload))
        _log.debug("chunk %s failed", segment.label, exc_info=error)
