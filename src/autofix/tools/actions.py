"""Parse model responses into typed file and command actions.

Only explicit structure is honoured. A fenced block whose info string carries
a path (```` ```python:src/app.py ```` or ```` ```:README.md ````) becomes a
file action; a fenced shell block (``bash``, ``sh``, ``shell``, ``zsh``,
``console``, ``terminal``) yields one command per line. Prose is never mined
for intent, so a response can create or edit files and run commands but can
never delete anything by itself.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from ..exceptions import ApprovalRequired
from ..policy.safety import is_safe

LOGGER = logging.getLogger(__name__)

ActionState = Literal["pending", "approved", "rejected", "executed", "failed"]
FileOp = Literal["create", "edit", "delete"]

_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"approved", "rejected", "executed", "failed"}),
    "approved": frozenset({"executed", "failed"}),
    "rejected": frozenset(),
    "executed": frozenset(),
    "failed": frozenset(),
}

SHELL_LANGUAGES = frozenset({"bash", "sh", "shell", "zsh", "console", "terminal"})

_FILE_BLOCK = re.compile(r"```(?P<lang>[\w+#-]+)?:(?P<path>[^\n]+)\n(?P<body>.*?)```", re.DOTALL)
_SHELL_BLOCK = re.compile(
    r"```(?P<lang>" + "|".join(sorted(SHELL_LANGUAGES)) + r")[ \t]*\n(?P<body>.*?)```",
    re.DOTALL,
)
_PROMPT_PREFIX = re.compile(r"^\$\s*")


class _Stateful:
    """Shared approval state machine for file and command actions."""

    state: ActionState
    error: str | None

    @property
    def needs_approval(self) -> bool:
        raise NotImplementedError

    def _advance(self, target: ActionState) -> None:
        allowed = _TRANSITIONS[self.state]
        if target not in allowed:
            raise ValueError(f"Illegal action transition {self.state} -> {target}")
        if target == "executed" and self.state == "pending" and self.needs_approval:
            raise ApprovalRequired(
                f"{self.describe()} requires approval before it can run",
                details={"action": self.describe()},
            )
        self.state = target

    def describe(self) -> str:
        raise NotImplementedError

    def approve(self) -> None:
        self._advance("approved")

    def reject(self) -> None:
        self._advance("rejected")

    def mark_executed(self) -> None:
        self._advance("executed")

    def mark_failed(self, error: str) -> None:
        self._advance("failed")
        self.error = error

    @property
    def is_pending(self) -> bool:
        return self.state == "pending"

    @property
    def is_runnable(self) -> bool:
        """Return ``True`` when the action may execute right now."""
        if self.state == "approved":
            return True
        return self.state == "pending" and not self.needs_approval


@dataclass(slots=True, eq=False)
class FileAction(_Stateful):
    """Create, edit or delete a single workspace file."""

    op: FileOp
    path: str
    new_content: str | None = None
    prior_content: str | None = None
    language: str | None = None
    state: ActionState = "pending"
    error: str | None = None

    @property
    def needs_approval(self) -> bool:
        return self.op == "delete"

    def describe(self) -> str:
        return f"{self.op} {self.path}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": "file",
            "op": self.op,
            "path": self.path,
            "language": self.language,
            "state": self.state,
            "error": self.error,
            "bytes": len(self.new_content.encode("utf-8")) if self.new_content is not None else None,
        }


@dataclass(slots=True, eq=False)
class CommandAction(_Stateful):
    """Shell command proposed by the model (or the host)."""

    command: str
    working_dir: str | None = None
    is_dangerous: bool | None = None
    state: ActionState = "pending"
    output: str = ""
    exit_code: int | None = None
    error: str | None = None
    timed_out: bool = False

    def __post_init__(self) -> None:
        if self.is_dangerous is None:
            self.is_dangerous = not is_safe(self.command)

    @property
    def needs_approval(self) -> bool:
        return bool(self.is_dangerous)

    def describe(self) -> str:
        return f"run `{self.command}`"

    @property
    def succeeded(self) -> bool:
        return self.state == "executed" and self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": "command",
            "command": self.command,
            "working_dir": self.working_dir,
            "is_dangerous": self.is_dangerous,
            "state": self.state,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "error": self.error,
        }


def _normalise_content(body: str) -> str:
    lines = body.replace("\r\n", "\n").split("\n")
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


def _resolve_inside(root: Path, relative: str) -> Path | None:
    candidate = (root / relative).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        return None
    return candidate


def _normalise_relative(path: str) -> str:
    cleaned = path.strip().strip("`'\"").replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned


def parse_file_actions(response_text: str, workspace_root: Path | str) -> list[FileAction]:
    root = Path(workspace_root).resolve()
    actions: list[FileAction] = []
    for match in _FILE_BLOCK.finditer(response_text):
        relative = _normalise_relative(match.group("path"))
        content = _normalise_content(match.group("body"))
        if not relative or not content:
            LOGGER.debug("Skipping fenced block with empty path or body")
            continue
        target = _resolve_inside(root, relative)
        if target is None:
            LOGGER.warning("Ignoring file block outside the workspace: %s", relative)
            continue
        prior: str | None = None
        op: FileOp = "create"
        if target.is_file():
            op = "edit"
            try:
                prior = target.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                LOGGER.debug("Could not capture prior content for %s", relative, exc_info=True)
        actions.append(
            FileAction(
                op=op,
                path=target.relative_to(root).as_posix(),
                new_content=content,
                prior_content=prior,
                language=(match.group("lang") or None),
            )
        )
    return actions


def parse_command_actions(response_text: str, working_dir: str | None = None) -> list[CommandAction]:
    actions: list[CommandAction] = []
    for match in _SHELL_BLOCK.finditer(response_text):
        for raw_line in match.group("body").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            command = _PROMPT_PREFIX.sub("", line).strip()
            if command:
                actions.append(CommandAction(command=command, working_dir=working_dir))
    return actions


def parse_actions(
    response_text: str, workspace_root: Path | str
) -> tuple[list[FileAction], list[CommandAction]]:
    """Return the file and command actions contained in ``response_text``."""
    if not response_text:
        return [], []
    files = parse_file_actions(response_text, workspace_root)
    commands = parse_command_actions(response_text)
    LOGGER.debug("Parsed %d file action(s) and %d command(s)", len(files), len(commands))
    return files, commands


__all__ = [
    "ActionState",
    "CommandAction",
    "FileAction",
    "FileOp",
    "SHELL_LANGUAGES",
    "parse_actions",
    "parse_command_actions",
    "parse_file_actions",
]
