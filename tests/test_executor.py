from __future__ import annotations

import shlex
import sys
import threading
from pathlib import Path

import pytest

from autofix.exceptions import CommandCancelledError, CommandTimeoutError, ExecError
from autofix.tools.actions import CommandAction, FileAction
from autofix.tools.executor import ActionExecutor, CommandResult, OutputTail, is_long_running, run_captured
from autofix.utils.cancellation import CancellationToken

PYTHON = shlex.quote(sys.executable)


class RecordingRunner:
    def __init__(self, exit_code: int = 0, output: str = "ok\n") -> None:
        self.calls: list[tuple[str, Path]] = []
        self.exit_code = exit_code
        self.output = output

    def __call__(self, command: str, cwd: Path, **_: object) -> CommandResult:
        self.calls.append((command, cwd))
        return CommandResult(command=command, exit_code=self.exit_code, output=self.output, duration=0.0)


def test_run_captured_merges_streams_and_returns_exit_code(tmp_path: Path) -> None:
    result = run_captured("echo out; echo err 1>&2; exit 3", tmp_path)

    assert result.exit_code == 3
    assert not result.ok
    assert "out" in result.output
    assert "err" in result.output


def test_run_captured_keeps_only_output_tail(tmp_path: Path) -> None:
    command = f"{PYTHON} -c \"print('x' * 5000 + 'END')\""

    result = run_captured(command, tmp_path, max_output_bytes=100)

    assert result.truncated
    assert result.output.startswith("[output truncated]")
    assert result.output.rstrip().endswith("END")
    assert len(result.output) < 200


def test_run_captured_raises_on_timeout(tmp_path: Path) -> None:
    command = f"{PYTHON} -c \"import time; time.sleep(5)\""

    with pytest.raises(CommandTimeoutError) as excinfo:
        run_captured(command, tmp_path, timeout=0.3)

    assert excinfo.value.timeout == 0.3


def test_run_captured_stops_when_cancelled(tmp_path: Path) -> None:
    token = CancellationToken()
    timer = threading.Timer(0.2, token.cancel)
    timer.start()
    command = f"{PYTHON} -c \"import time; time.sleep(5)\""

    try:
        with pytest.raises(CommandCancelledError):
            run_captured(command, tmp_path, cancel=token)
    finally:
        timer.cancel()


def test_run_captured_check_raises_exec_error(tmp_path: Path) -> None:
    with pytest.raises(ExecError) as excinfo:
        run_captured("exit 2", tmp_path, check=True)

    assert excinfo.value.exit_code == 2


def test_execute_batch_writes_files_and_queues_approvals(tmp_path: Path) -> None:
    (tmp_path / "legacy.py").write_text("x = 1\n", encoding="utf-8")
    runner = RecordingRunner(output="2 passed\n")
    executor = ActionExecutor(tmp_path, runner=runner)
    create = FileAction(op="create", path="pkg/new.py", new_content="VALUE = 2\n")
    delete = FileAction(op="delete", path="legacy.py")
    safe = CommandAction(command="pytest -q")
    dangerous = CommandAction(command="pip install requests")

    report = executor.execute_batch([create, delete], [safe, dangerous])

    assert (tmp_path / "pkg" / "new.py").read_text(encoding="utf-8") == "VALUE = 2\n"
    assert (tmp_path / "legacy.py").exists()
    assert report.executed == [create, safe]
    assert report.pending_approvals == [delete, dangerous]
    assert [command for command, _ in runner.calls] == ["pytest -q"]
    assert safe.output == "2 passed\n"
    assert safe.exit_code == 0
    assert safe.succeeded
    assert delete.state == "pending"


def test_approve_runs_pending_delete(tmp_path: Path) -> None:
    target = tmp_path / "legacy.py"
    target.write_text("x = 1\n", encoding="utf-8")
    executor = ActionExecutor(tmp_path, runner=RecordingRunner())
    delete = FileAction(op="delete", path="legacy.py")

    assert executor.approve(delete)
    assert delete.state == "executed"
    assert not target.exists()


def test_reject_leaves_workspace_untouched(tmp_path: Path) -> None:
    target = tmp_path / "legacy.py"
    target.write_text("x = 1\n", encoding="utf-8")
    executor = ActionExecutor(tmp_path, runner=RecordingRunner())
    delete = FileAction(op="delete", path="legacy.py")

    executor.reject(delete)

    assert delete.state == "rejected"
    assert target.exists()


def test_failed_actions_are_recorded_without_stopping_the_batch(tmp_path: Path) -> None:
    executor = ActionExecutor(tmp_path, runner=RecordingRunner())
    escape = FileAction(op="create", path="../outside.py", new_content="x = 1\n")
    missing = FileAction(op="edit", path="app.py", new_content=None)
    ok = FileAction(op="create", path="app.py", new_content="y = 2\n")

    report = executor.execute_batch([escape, missing, ok], [])

    assert report.failed == [escape, missing]
    assert report.executed == [ok]
    assert escape.state == "failed"
    assert "escapes the workspace" in (escape.error or "")
    assert not (tmp_path.parent / "outside.py").exists()


def test_command_working_dir_is_resolved_inside_workspace(tmp_path: Path) -> None:
    (tmp_path / "web").mkdir()
    runner = RecordingRunner()
    executor = ActionExecutor(tmp_path, runner=runner)

    executor.run(CommandAction(command="npm test", working_dir="web"))

    assert runner.calls == [("npm test", (tmp_path / "web").resolve())]


def test_non_capturing_run_uses_launcher(tmp_path: Path) -> None:
    launched: list[str] = []
    executor = ActionExecutor(tmp_path, launcher=lambda command, cwd: launched.append(command))
    action = CommandAction(command="npm run dev")

    assert executor.run(action, capture=False) is None
    assert launched == ["npm run dev"]
    assert action.state == "executed"


def test_run_captured_streams_large_output_into_bounded_tail(tmp_path: Path) -> None:
    script = "import sys\nfor i in range(400):\n    sys.stdout.write(str(i).rjust(999) + chr(10))\n    sys.stdout.flush()\nprint('DONE')"
    command = f"{PYTHON} -c {shlex.quote(script)}"

    result = run_captured(command, tmp_path, max_output_bytes=4096)

    assert result.exit_code == 0
    assert result.truncated
    body = result.output.removeprefix("[output truncated]\n")
    assert len(body.encode("utf-8")) <= 4096
    assert body.rstrip().endswith("DONE")
    assert "399" in body


def test_output_tail_drops_old_chunks_while_reading() -> None:
    tail = OutputTail(1000)

    for index in range(100):
        tail.append(f"{index:03d}".encode() * 100)

    assert tail.truncated
    assert tail.retained < 1000 + 300
    output, truncated = tail.text()
    assert truncated
    assert output.startswith("[output truncated]\n")
    assert output.endswith("099" * 100)
    assert len(output) == len("[output truncated]\n") + 1000


def test_cancellation_token_wakes_waiters() -> None:
    token = CancellationToken()
    threading.Timer(0.05, token.cancel, args=("stop",)).start()

    assert token.wait(5)
    assert token.cancelled
    assert token.reason == "stop"
    assert not CancellationToken().wait(0.01)


def test_timed_out_command_keeps_partial_output(tmp_path: Path) -> None:
    def runner(command: str, cwd: Path, **_: object) -> CommandResult:
        raise CommandTimeoutError(command, 1.0, "src/app.ts(1,7): error TS2322: boom\n")

    executor = ActionExecutor(tmp_path, runner=runner)
    action = CommandAction(command="npx tsc --noEmit")

    report = executor.execute_batch([], [action])

    assert report.failed == [action]
    assert report.timed_out == [action]
    assert action.timed_out
    assert "TS2322" in action.output
    assert action.to_dict()["timed_out"] is True


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        ("npm run dev", True),
        ("npm start", True),
        ("yarn dev", True),
        ("npx next dev", True),
        ("vite", True),
        ("tsc --watch", True),
        ("jest --watchAll", True),
        ("vite build", False),
        ("npm run build", False),
        ("npm test", False),
        ("pytest -q", False),
    ],
)
def test_is_long_running(command: str, expected: bool) -> None:
    assert is_long_running(command) is expected


def test_execute_launches_dev_servers_without_capturing(tmp_path: Path) -> None:
    launched: list[str] = []
    runner = RecordingRunner()
    executor = ActionExecutor(tmp_path, runner=runner, launcher=lambda command, cwd: launched.append(command))
    server = CommandAction(command="npm run dev")
    tests = CommandAction(command="npm test")

    report = executor.execute_batch([], [server, tests])

    assert report.executed == [server, tests]
    assert launched == ["npm run dev"]
    assert [command for command, _ in runner.calls] == ["npm test"]
    assert server.exit_code is None
