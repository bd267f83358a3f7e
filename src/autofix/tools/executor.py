"""Apply file and command actions to the workspace.

The executor owns the only side-effecting surface of the engine: it writes and
removes files under the workspace root and spawns shell processes. Every
action records its own outcome (``state``, ``error``, ``output``,
``exit_code``); there is no rollback across a batch.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Callable, Deque, Iterable, Sequence

from ..exceptions import (
    ApprovalRequired,
    AutofixError,
    CommandCancelledError,
    CommandTimeoutError,
    ExecError,
    WorkspaceIOError,
)
from ..utils.cancellation import CancellationToken, is_cancelled
from .actions import CommandAction, FileAction

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("autofix.telemetry")

DEFAULT_COMMAND_TIMEOUT = 300.0
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
_POLL_INTERVAL = 0.1
_READ_CHUNK = 64 * 1024
_KILL_GRACE = 5.0
_POSIX = os.name == "posix"
_TRUNCATION_MARKER = "[output truncated]\n"


@dataclass(slots=True)
class CommandResult:
    """Captured outcome of a shell command."""

    command: str
    exit_code: int
    output: str
    duration: float
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _serialise_event_value(value: Any) -> Any:
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _serialise_event_value(item) for key, item in value.items()}
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def _emit_action_event(event: str, **fields: Any) -> None:
    """Log structured telemetry events for executed actions."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


class OutputTail:
    """Keep the trailing ``max_bytes`` of a byte stream as it is read."""

    def __init__(self, max_bytes: int) -> None:
        self.max_bytes = max_bytes
        self.truncated = False
        self._chunks: Deque[bytes] = deque()
        self._size = 0
        self._lock = threading.Lock()

    @property
    def retained(self) -> int:
        with self._lock:
            return self._size

    def append(self, chunk: bytes) -> None:
        with self._lock:
            self._chunks.append(chunk)
            self._size += len(chunk)
            if self.max_bytes <= 0:
                return
            while len(self._chunks) > 1 and self._size - len(self._chunks[0]) >= self.max_bytes:
                self._size -= len(self._chunks.popleft())
                self.truncated = True

    def text(self) -> tuple[str, bool]:
        with self._lock:
            data = b"".join(self._chunks)
            truncated = self.truncated
        if 0 < self.max_bytes < len(data):
            data = data[-self.max_bytes :]
            truncated = True
        output = data.decode("utf-8", errors="ignore" if truncated else "replace").replace("\r\n", "\n")
        return (_TRUNCATION_MARKER + output if truncated else output), truncated


def _pump(stream: IO[bytes], tail: OutputTail) -> None:
    with stream:
        for chunk in iter(lambda: stream.read1(_READ_CHUNK), b""):
            tail.append(chunk)


def _kill(process: subprocess.Popen[bytes], reader: threading.Thread) -> None:
    if _POSIX:
        # The shell's children share its process group.
        with contextlib.suppress(ProcessLookupError):
            os.killpg(process.pid, signal.SIGKILL)
    else:
        process.kill()
    try:
        process.wait(timeout=_KILL_GRACE)
    except subprocess.TimeoutExpired:
        LOGGER.warning("Process %s did not exit after kill", process.pid)
    reader.join(timeout=_KILL_GRACE)


def run_captured(
    command: str,
    cwd: Path | str | None = None,
    *,
    timeout: float | None = DEFAULT_COMMAND_TIMEOUT,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    cancel: CancellationToken | None = None,
    check: bool = False,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run ``command`` through the shell and return its combined output.

    The call blocks until the process exits, the wall-clock ``timeout``
    elapses (:class:`CommandTimeoutError`) or ``cancel`` fires
    (:class:`CommandCancelledError`). Output is read while the process runs
    and only the trailing ``max_output_bytes`` of stdout and stderr are held
    in memory. A non-zero exit code is returned, not raised, unless ``check``
    is true.
    """
    started = time.monotonic()
    deadline = started + timeout if timeout else None
    process = subprocess.Popen(  # noqa: S602  # shell commands come from approved actions
        command,
        shell=True,
        cwd=str(cwd) if cwd is not None else None,
        env={**os.environ, **env} if env else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        start_new_session=_POSIX,
    )
    tail = OutputTail(max_output_bytes)
    reader = threading.Thread(target=_pump, args=(process.stdout, tail), name="autofix-output", daemon=True)
    reader.start()
    try:
        while process.poll() is None:
            if is_cancelled(cancel):
                _kill(process, reader)
                raise CommandCancelledError(command, tail.text()[0])
            if deadline is not None and time.monotonic() >= deadline:
                _kill(process, reader)
                raise CommandTimeoutError(command, timeout or 0.0, tail.text()[0])
            if cancel is not None:
                cancel.wait(_POLL_INTERVAL)
            else:
                time.sleep(_POLL_INTERVAL)
    except (CommandCancelledError, CommandTimeoutError):
        raise
    except BaseException:
        _kill(process, reader)
        raise
    reader.join()

    output, truncated = tail.text()
    result = CommandResult(
        command=command,
        exit_code=process.returncode,
        output=output,
        duration=time.monotonic() - started,
        truncated=truncated,
    )
    if check and result.exit_code != 0:
        raise ExecError(command, result.exit_code, result.output)
    return result


def launch_interactive(command: str, cwd: Path | str | None = None) -> subprocess.Popen[bytes]:
    """Start ``command`` attached to the host terminal and return immediately."""
    return subprocess.Popen(  # noqa: S602  # shell commands come from approved actions
        command,
        shell=True,
        cwd=str(cwd) if cwd is not None else None,
    )


_LONG_RUNNING = re.compile(
    r"^(?:(?:npm|yarn|pnpm|bun)\s+(?:run\s+)?(?:dev|start|serve|watch)\b"
    r"|(?:npx\s+)?(?:vite|nodemon)\b(?!\s+build)"
    r"|(?:npx\s+)?next\s+(?:dev|start)\b"
    r"|dotnet\s+watch\b"
    r"|.*\s--watch(?:All)?\b)"
)


def is_long_running(command: str) -> bool:
    """Return ``True`` for dev servers and watchers that do not exit on their own."""
    return bool(_LONG_RUNNING.match(command.strip()))


Runner = Callable[..., CommandResult]
Launcher = Callable[[str, "Path | str | None"], Any]


@dataclass(slots=True)
class ExecutionReport:
    """Outcome of applying a parsed response."""

    executed: list[FileAction | CommandAction] = field(default_factory=list)
    failed: list[FileAction | CommandAction] = field(default_factory=list)
    pending_approvals: list[FileAction | CommandAction] = field(default_factory=list)

    @property
    def commands(self) -> list[CommandAction]:
        return [item for item in self.executed if isinstance(item, CommandAction)]

    @property
    def files(self) -> list[FileAction]:
        return [item for item in self.executed if isinstance(item, FileAction)]

    @property
    def timed_out(self) -> list[CommandAction]:
        return [item for item in self.failed if isinstance(item, CommandAction) and item.timed_out]

    def merge(self, other: "ExecutionReport") -> None:
        self.executed.extend(other.executed)
        self.failed.extend(other.failed)
        self.pending_approvals.extend(other.pending_approvals)

    def to_dict(self) -> dict[str, Any]:
        return {
            "executed": [item.to_dict() for item in self.executed],
            "failed": [item.to_dict() for item in self.failed],
            "pending_approvals": [item.to_dict() for item in self.pending_approvals],
        }


class ActionExecutor:
    """Execute actions inside ``workspace_root``."""

    def __init__(
        self,
        workspace_root: Path | str,
        *,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        runner: Runner = run_captured,
        launcher: Launcher = launch_interactive,
    ) -> None:
        self.workspace_root = Path(workspace_root).resolve()
        self.command_timeout = command_timeout
        self.max_output_bytes = max_output_bytes
        self._runner = runner
        self._launcher = launcher

    # ------------------------------------------------------------------ files
    def resolve(self, path: str | Path) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.workspace_root / candidate
        resolved = candidate.resolve()
        try:
            resolved.relative_to(self.workspace_root)
        except ValueError as exc:
            raise WorkspaceIOError(
                f"Path escapes the workspace: {path}", details={"path": str(path)}
            ) from exc
        return resolved

    def relative(self, path: str | Path) -> str:
        return self.resolve(path).relative_to(self.workspace_root).as_posix()

    def read_file(self, path: str | Path) -> str | None:
        target = self.resolve(path)
        if not target.is_file():
            return None
        try:
            return target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise WorkspaceIOError(f"Unable to read {path}: {exc}", details={"path": str(path)}) from exc

    def write_file(self, path: str | Path, content: str) -> Path:
        target = self.resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise WorkspaceIOError(f"Unable to write {path}: {exc}", details={"path": str(path)}) from exc
        return target

    def delete_file(self, path: str | Path) -> None:
        target = self.resolve(path)
        if not target.exists():
            raise WorkspaceIOError(f"Cannot delete missing file {path}", details={"path": str(path)})
        try:
            target.unlink()
        except OSError as exc:
            raise WorkspaceIOError(f"Unable to delete {path}: {exc}", details={"path": str(path)}) from exc

    # ---------------------------------------------------------------- actions
    def create(self, action: FileAction) -> None:
        self._write(action)

    def edit(self, action: FileAction) -> None:
        self._write(action)

    def _write(self, action: FileAction) -> None:
        if action.new_content is None:
            raise WorkspaceIOError(f"No content supplied for {action.path}", details={"path": action.path})
        if not action.is_runnable:
            raise ApprovalRequired(f"{action.describe()} is {action.state}")
        try:
            self.write_file(action.path, action.new_content)
        except WorkspaceIOError as exc:
            action.mark_failed(str(exc))
            raise
        action.mark_executed()

    def delete(self, action: FileAction) -> None:
        if action.state != "approved":
            raise ApprovalRequired(
                f"Deleting {action.path} requires approval", details={"path": action.path}
            )
        try:
            self.delete_file(action.path)
        except WorkspaceIOError as exc:
            action.mark_failed(str(exc))
            raise
        action.mark_executed()

    def run(
        self,
        action: CommandAction,
        *,
        capture: bool = True,
        cancel: CancellationToken | None = None,
    ) -> CommandResult | None:
        if not action.is_runnable:
            raise ApprovalRequired(
                f"Command requires approval: {action.command}", details={"command": action.command}
            )
        cwd = self.resolve(action.working_dir) if action.working_dir else self.workspace_root
        if not capture:
            self._launcher(action.command, cwd)
            action.mark_executed()
            return None
        try:
            result = self._runner(
                action.command,
                cwd,
                timeout=self.command_timeout,
                max_output_bytes=self.max_output_bytes,
                cancel=cancel,
            )
        except (CommandTimeoutError, CommandCancelledError) as exc:
            action.output = exc.output
            action.timed_out = isinstance(exc, CommandTimeoutError)
            action.mark_failed(str(exc))
            raise
        except OSError as exc:
            action.mark_failed(str(exc))
            raise WorkspaceIOError(f"Unable to start command: {exc}", details={"command": action.command}) from exc
        action.output = result.output
        action.exit_code = result.exit_code
        action.mark_executed()
        return result

    def execute(
        self,
        action: FileAction | CommandAction,
        *,
        cancel: CancellationToken | None = None,
    ) -> bool:
        """Dispatch ``action`` and record its outcome; never raises."""
        try:
            if isinstance(action, CommandAction):
                interactive = is_long_running(action.command)
                if interactive:
                    LOGGER.info("Launching long-running command in the terminal: %s", action.command)
                self.run(action, capture=not interactive, cancel=cancel)
            elif action.op == "delete":
                self.delete(action)
            elif action.op == "edit":
                self.edit(action)
            else:
                self.create(action)
        except ApprovalRequired:
            LOGGER.info("Action awaiting approval: %s", action.describe())
            return False
        except (AutofixError, OSError) as exc:
            if action.state in ("pending", "approved"):
                action.mark_failed(str(exc))
            LOGGER.warning("Action failed: %s (%s)", action.describe(), exc)
            _emit_action_event("action_failed", action=action.to_dict())
            return False
        _emit_action_event("action_executed", action=action.to_dict())
        return True

    def execute_batch(
        self,
        files: Sequence[FileAction],
        commands: Sequence[CommandAction],
        *,
        cancel: CancellationToken | None = None,
    ) -> ExecutionReport:
        """Run everything that needs no approval; queue the rest."""
        report = ExecutionReport()
        ordered: Iterable[FileAction | CommandAction] = [*files, *commands]
        for action in ordered:
            if action.state == "pending" and action.needs_approval:
                report.pending_approvals.append(action)
                _emit_action_event("action_pending", action=action.to_dict())
                continue
            if is_cancelled(cancel):
                break
            if self.execute(action, cancel=cancel):
                report.executed.append(action)
            else:
                report.failed.append(action)
        return report

    def approve(
        self,
        action: FileAction | CommandAction,
        *,
        cancel: CancellationToken | None = None,
    ) -> bool:
        action.approve()
        return self.execute(action, cancel=cancel)

    def reject(self, action: FileAction | CommandAction) -> None:
        action.reject()
        _emit_action_event("action_rejected", action=action.to_dict())


__all__ = [
    "ActionExecutor",
    "CommandResult",
    "DEFAULT_COMMAND_TIMEOUT",
    "DEFAULT_MAX_OUTPUT_BYTES",
    "ExecutionReport",
    "OutputTail",
    "is_long_running",
    "launch_interactive",
    "run_captured",
]
