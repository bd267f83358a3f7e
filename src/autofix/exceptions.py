"""Exception hierarchy shared across the fix engine."""

from __future__ import annotations

from typing import Any, Mapping


class AutofixError(RuntimeError):
    """Base class for engine failures."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = dict(details or {})


class ApprovalRequired(AutofixError):
    """Raised when a delete or dangerous command is executed without approval."""


class RetryCeilingReached(AutofixError):
    """Raised by hosts that want an exception for an exhausted error identity."""


class WorkspaceIOError(AutofixError, OSError):
    """Raised when a workspace file cannot be read, written or removed."""


class ExecError(AutofixError):
    """Raised for a non-zero exit when the caller asked for checked execution."""

    def __init__(self, command: str, exit_code: int, output: str) -> None:
        super().__init__(
            f"Command exited with code {exit_code}: {command}",
            details={"command": command, "exit_code": exit_code},
        )
        self.command = command
        self.exit_code = exit_code
        self.output = output


class CommandTimeoutError(AutofixError, TimeoutError):
    """Raised when a captured command exceeds its wall-clock budget."""

    def __init__(self, command: str, timeout: float, output: str = "") -> None:
        super().__init__(
            f"Command timed out after {timeout:g}s: {command}",
            details={"command": command, "timeout": timeout},
        )
        self.command = command
        self.timeout = timeout
        self.output = output


class CommandCancelledError(AutofixError):
    """Raised when a captured command is stopped through a cancellation token."""

    def __init__(self, command: str, output: str = "") -> None:
        super().__init__(f"Command cancelled: {command}", details={"command": command})
        self.command = command
        self.output = output


__all__ = [
    "ApprovalRequired",
    "AutofixError",
    "CommandCancelledError",
    "CommandTimeoutError",
    "ExecError",
    "RetryCeilingReached",
    "WorkspaceIOError",
]
