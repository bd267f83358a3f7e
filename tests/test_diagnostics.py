from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Any, Callable

import pytest

from autofix.config import DiagnosticsSettings, EngineSettings
from autofix.diagnostics import (
    Diagnostic,
    DiagnosticsPayloadError,
    DiagnosticsQueue,
    JsonFileDiagnosticsSource,
    StaticDiagnosticsSource,
    diagnostic_to_error,
    infer_kind,
    parse_diagnostics_payload,
)
from autofix.engine import FixEngine
from autofix.tools.errors import ErrorKind
from autofix.tools.executor import ActionExecutor

FIXED_APP = "```typescript:src/app.ts\nconst total: number = 1;\n```\n"


class FakeTimer:
    def __init__(self, interval: float, function: Callable[..., None], args: tuple[Any, ...] = ()) -> None:
        self.interval = interval
        self.function = function
        self.args = args
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.function(*self.args)


class TimerFactory:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, interval: float, function: Callable[..., None], args: tuple[Any, ...] = ()) -> FakeTimer:
        timer = FakeTimer(interval, function, args)
        self.timers.append(timer)
        return timer


def _type_error(line: int = 0, message: str = "Type 'string' is not assignable to type 'number'.") -> Diagnostic:
    return Diagnostic(message=message, severity="error", start_line=line, start_column=6, code="2322", source="ts")


def _engine(tmp_path: Path, model: Any) -> FixEngine:
    return FixEngine(
        model,
        ActionExecutor(tmp_path),
        settings=EngineSettings(verify_settle_seconds=0),
        sleep=lambda _: None,
    )


def _queue(tmp_path: Path, model: Any, source: StaticDiagnosticsSource, **settings: Any) -> tuple[DiagnosticsQueue, TimerFactory]:
    timers = TimerFactory()
    queue = DiagnosticsQueue(
        _engine(tmp_path, model),
        source,
        DiagnosticsSettings(**settings),
        timer_factory=timers,
    )
    return queue, timers


def test_diagnostic_to_error_converts_to_one_based_positions() -> None:
    diagnostic = Diagnostic(
        message="Cannot find name 'foo'.",
        start_line=4,
        start_column=2,
        end_line=4,
        end_column=5,
        code="2304",
        source="ts",
    )

    error = diagnostic_to_error(diagnostic, "src\\app.ts")

    assert error.kind is ErrorKind.TYPE_ERROR
    assert error.file == "src/app.ts"
    assert (error.line, error.column, error.end_line, error.end_column) == (5, 3, 5, 6)
    assert error.source == "ts"
    assert error.raw_text == "Cannot find name 'foo'."


@pytest.mark.parametrize(
    ("source", "message", "expected"),
    [
        ("eslint", "'x' is defined but never used.", ErrorKind.LINT),
        ("prettier", "Insert `;`", ErrorKind.STYLE),
        ("Pylance", 'Import "requests" could not be resolved', ErrorKind.MISSING_MODULE),
        ("mypy", "Incompatible types in assignment", ErrorKind.TYPE_ERROR),
        ("ruff", "`os` imported but unused", ErrorKind.LINT),
        ("volar", "Property 'foo' does not exist", ErrorKind.FRAMEWORK),
        ("scss", "unknown word", ErrorKind.STYLE),
        ("dart", "Undefined name 'context'.", ErrorKind.FRAMEWORK),
        ("sourcekitd", "Cannot find 'x' in scope", ErrorKind.BUILD),
        (None, "Module not found: Can't resolve './api'", ErrorKind.MISSING_MODULE),
        (None, "Unexpected token '}'", ErrorKind.SYNTAX),
        (None, "Something odd happened", ErrorKind.UNKNOWN),
    ],
)
def test_infer_kind(source: str | None, message: str, expected: ErrorKind) -> None:
    kind, _ = infer_kind(Diagnostic(message=message, source=source))

    assert kind is expected


def test_react_hook_messages_are_tagged_with_framework() -> None:
    kind, framework = infer_kind(Diagnostic(message="React Hook useEffect has a missing dependency", source="babel"))

    assert kind is ErrorKind.FRAMEWORK
    assert framework == "react"


def test_parse_lsp_payload_accepts_numeric_severity() -> None:
    payload = {
        "src/app.ts": [
            {
                "message": "Cannot find name 'foo'.",
                "severity": 1,
                "code": 2304,
                "source": "ts",
                "range": {"start": {"line": 2, "character": 4}, "end": {"line": 2, "character": 7}},
                "tags": [],
            },
            {"message": "Prefer const", "severity": "Warning", "range": {"start": {"line": 0}}},
        ]
    }

    parsed = parse_diagnostics_payload(payload)

    first, second = parsed["src/app.ts"]
    assert first.severity == "error"
    assert first.code == "2304"
    assert (first.start_line, first.start_column, first.end_column) == (2, 4, 7)
    assert second.severity == "warning"
    assert second.end_line is None


def test_parse_payload_list_form_and_validation_errors() -> None:
    parsed = parse_diagnostics_payload(
        [{"path": "a.py", "diagnostics": [{"message": "boom", "range": {"start": {"line": 0}}}]}]
    )
    assert [item.message for item in parsed["a.py"]] == ["boom"]

    with pytest.raises(DiagnosticsPayloadError):
        parse_diagnostics_payload({"a.py": [{"message": "missing range"}]})
    with pytest.raises(DiagnosticsPayloadError):
        parse_diagnostics_payload([{"diagnostics": []}])


def test_json_file_source_rereads_on_every_query(tmp_path: Path) -> None:
    document = tmp_path / "diagnostics.json"
    source = JsonFileDiagnosticsSource(document)
    assert source.get_diagnostics("a.py") == []

    document.write_text(
        json.dumps({"a.py": [{"message": "boom", "range": {"start": {"line": 0}}}]}),
        encoding="utf-8",
    )
    assert [item.message for item in source.get_diagnostics("a.py")] == ["boom"]
    assert source.paths() == ["a.py"]


def test_changed_diagnostics_are_filtered_and_deduplicated(tmp_path: Path, scripted_model) -> None:
    source = StaticDiagnosticsSource(
        {
            "src/app.ts": [
                _type_error(),
                Diagnostic(message="Prefer const", severity="warning", source="eslint"),
                Diagnostic(message="Missing semicolon", severity="error", code="semi", source="eslint"),
            ],
            "node_modules/lib/index.d.ts": [_type_error()],
        }
    )
    queue, _ = _queue(tmp_path, scripted_model(), source, ignored_rules=["semi"])

    queue.on_diagnostics_changed(["src/app.ts", "node_modules/lib/index.d.ts"])
    queue.on_diagnostics_changed(["src/app.ts"])

    queued = queue.queued_errors("src/app.ts")
    assert [error.message for error in queued] == ["Type 'string' is not assignable to type 'number'."]
    assert queue.pending_files == ["src/app.ts"]
    assert queue.is_ignored("node_modules/lib/index.d.ts")
    assert not queue.is_ignored("src/buildHelpers.ts")


def test_save_debounce_only_latest_timer_fixes(tmp_path: Path, scripted_model) -> None:
    source = StaticDiagnosticsSource({"src/app.ts": [_type_error()]})

    def fix(_: str) -> str:
        source.update("src/app.ts", [])
        return FIXED_APP

    model = scripted_model(replies=[fix])
    queue, timers = _queue(tmp_path, model, source, debounce_seconds=1.5)

    queue.on_diagnostics_changed(["src/app.ts"])
    queue.on_document_saved("src/app.ts")
    queue.on_document_saved("src/app.ts")

    first, second = timers.timers
    assert first.cancelled
    assert second.started and not second.cancelled
    assert second.interval == 1.5

    first.fire()
    assert model.prompts == []

    second.fire()
    assert len(model.prompts) == 1
    assert (tmp_path / "src" / "app.ts").read_text(encoding="utf-8") == "const total: number = 1;\n"
    [result] = queue.results
    assert result.success
    assert result.errors_fixed == 1
    assert queue.pending_files == []
    assert queue.error_summary() == {"total": 0, "by_kind": {}, "by_file": {}}


def test_save_is_ignored_when_auto_fix_on_save_is_off(tmp_path: Path, scripted_model) -> None:
    source = StaticDiagnosticsSource({"src/app.ts": [_type_error()]})
    queue, timers = _queue(tmp_path, scripted_model(), source, auto_fix_on_save=False)

    queue.on_diagnostics_changed(["src/app.ts"])
    queue.on_document_saved("src/app.ts")

    assert timers.timers == []
    assert queue.pending_files == ["src/app.ts"]


def test_turning_off_auto_fix_on_save_cancels_pending_timers(tmp_path: Path, scripted_model) -> None:
    source = StaticDiagnosticsSource({"src/app.ts": [_type_error()]})
    queue, timers = _queue(tmp_path, scripted_model(), source)

    queue.on_diagnostics_changed(["src/app.ts"])
    queue.on_document_saved("src/app.ts")
    queue.set_auto_fix_on_save(False)
    queue.on_document_saved("src/app.ts")

    assert not queue.auto_fix_on_save
    assert len(timers.timers) == 1
    assert timers.timers[0].cancelled


def test_disabled_auto_fix_only_tracks_summary(tmp_path: Path, scripted_model) -> None:
    source = StaticDiagnosticsSource({"src/app.ts": [_type_error(), _type_error(3, "Cannot find name 'x'.")]})
    queue, _ = _queue(tmp_path, scripted_model(), source, auto_fix_enabled=False)

    queue.on_diagnostics_changed(["src/app.ts"])

    assert queue.pending_files == []
    summary = queue.error_summary()
    assert summary["total"] == 2
    assert summary["by_kind"] == {"type-error": 2}
    assert summary["by_file"] == {"src/app.ts": 2}
    assert len(queue.file_errors("src/app.ts")) == 2


def test_drain_processes_files_in_fifo_order(tmp_path: Path, scripted_model) -> None:
    source = StaticDiagnosticsSource(
        {
            "src/b.ts": [_type_error(0, "b is broken")],
            "src/a.ts": [_type_error(0, "a is broken")],
        }
    )
    model = scripted_model()
    queue, _ = _queue(tmp_path, model, source)

    queue.on_diagnostics_changed(["src/b.ts"])
    queue.on_diagnostics_changed(["src/a.ts"])
    results = queue.drain()

    assert len(results) == 2
    first_file = [prompt for prompt in model.prompts if "b is broken" in prompt]
    second_file = [prompt for prompt in model.prompts if "a is broken" in prompt]
    assert model.prompts.index(first_file[0]) < model.prompts.index(second_file[0])
    assert all(not result.success for result in results)


def test_dispose_cancels_pending_timers(tmp_path: Path, scripted_model) -> None:
    source = StaticDiagnosticsSource({"src/app.ts": [_type_error()]})
    model = scripted_model()
    queue, timers = _queue(tmp_path, model, source)

    queue.on_diagnostics_changed(["src/app.ts"])
    queue.on_document_saved("src/app.ts")
    queue.dispose()
    timers.timers[0].fire()

    assert timers.timers[0].cancelled
    assert model.prompts == []


def test_verification_uses_the_queue_severity_filter(tmp_path: Path, scripted_model) -> None:
    warning = Diagnostic(message="'unused' is declared but never read.", severity="warning", code="6133", source="ts")
    source = StaticDiagnosticsSource({"src/app.ts": [warning]})
    model = scripted_model(replies=[FIXED_APP] * 3)
    queue, _ = _queue(tmp_path, model, source, severity_filter=["error", "warning"])

    queue.on_diagnostics_changed(["src/app.ts"])
    [result] = queue.drain()

    assert result.errors_fixed == 0
    assert not result.success
    assert [error.message for error in result.remaining_errors] == [warning.message]
    assert len(model.prompts) == 3
    assert queue.error_summary()["total"] == 1


def _broken(path: str) -> Diagnostic:
    return _type_error(0, f"{path} is broken")


def _healing_reply(source: StaticDiagnosticsSource, paths: list[str], fixed: list[str], hold=None):
    def reply(prompt: str) -> str:
        mentioned = [(prompt.find(f"{candidate} is broken"), candidate) for candidate in paths]
        _, path = min(item for item in mentioned if item[0] >= 0)
        if hold is not None and not fixed:
            hold(path)
        fixed.append(path)
        source.update(path, [])
        return f"```typescript:{path}\nconst ok = 1;\n```\n"

    return reply


def _count_concurrent_fixes(monkeypatch: pytest.MonkeyPatch, engine: FixEngine) -> list[int]:
    lock = threading.Lock()
    active = [0]
    peaks: list[int] = []
    original = engine.fix_errors

    def counting(*args: Any, **kwargs: Any):
        with lock:
            active[0] += 1
            peaks.append(active[0])
        try:
            return original(*args, **kwargs)
        finally:
            with lock:
                active[0] -= 1

    monkeypatch.setattr(engine, "fix_errors", counting)
    return peaks


def test_timer_fired_during_a_drain_waits_its_turn(tmp_path: Path, scripted_model, monkeypatch) -> None:
    paths = ["src/a.ts", "src/b.ts", "src/c.ts"]
    source = StaticDiagnosticsSource({path: [_broken(path)] for path in paths})
    entered = threading.Event()
    release = threading.Event()
    fixed: list[str] = []

    def hold(_: str) -> None:
        entered.set()
        assert release.wait(5)

    model = scripted_model(replies=[_healing_reply(source, paths, fixed, hold)] * 3)
    queue, timers = _queue(tmp_path, model, source)
    peaks = _count_concurrent_fixes(monkeypatch, queue.engine)

    queue.on_diagnostics_changed(paths)
    for path in paths:
        queue.on_document_saved(path)
    first, second, third = timers.timers

    worker = threading.Thread(target=first.fire)
    worker.start()
    assert entered.wait(5)
    third.fire()
    second.fire()
    assert fixed == []
    assert len(model.prompts) == 1

    release.set()
    worker.join(5)

    assert not worker.is_alive()
    assert fixed == ["src/a.ts", "src/c.ts", "src/b.ts"]
    assert max(peaks) == 1
    assert [result.success for result in queue.results] == [True, True, True]
    assert queue.pending_files == []


def test_concurrent_host_callbacks_fix_each_file_once(tmp_path: Path, scripted_model, monkeypatch) -> None:
    paths = [f"src/f{index}.ts" for index in range(6)]
    source = StaticDiagnosticsSource({path: [_broken(path)] for path in paths})
    fixed: list[str] = []
    model = scripted_model(replies=[_healing_reply(source, paths, fixed)] * len(paths))
    queue = DiagnosticsQueue(
        _engine(tmp_path, model),
        source,
        DiagnosticsSettings(debounce_seconds=0.02),
    )
    peaks = _count_concurrent_fixes(monkeypatch, queue.engine)

    def run_together(target: Callable[[int], None], count: int) -> None:
        barrier = threading.Barrier(count)

        def worker(index: int) -> None:
            barrier.wait(5)
            target(index)

        threads = [threading.Thread(target=worker, args=(index,)) for index in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

    run_together(lambda _: queue.on_diagnostics_changed(paths), 8)

    assert sorted(queue.pending_files) == sorted(paths)
    assert all(len(queue.queued_errors(path)) == 1 for path in paths)

    run_together(lambda index: queue.on_document_saved(paths[index % len(paths)]), 2 * len(paths))

    deadline = time.monotonic() + 10
    while len(queue.results) < len(paths) and time.monotonic() < deadline:
        time.sleep(0.01)
    queue.dispose()

    assert sorted(fixed) == sorted(paths)
    assert len(model.prompts) == len(paths)
    assert len(queue.results) == len(paths)
    assert all(result.success for result in queue.results)
    assert max(peaks) == 1
