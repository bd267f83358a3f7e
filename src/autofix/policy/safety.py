"""Safety gate deciding which actions may run without a human in the loop.

The gate is a pure lookup against two rule tables:

``DANGEROUS_COMMAND_RULES``
    Commands that delete data, escalate privileges, install or remove
    packages, mutate remote state, or talk to cloud/database back ends.

``SAFE_COMMAND_RULES``
    Read-only inspection plus the standard build, test and lint entry points
    of common toolchains.

A dangerous match always wins. Anything matching neither table is treated as
unsafe. Compound shell lines are checked segment by segment and are only safe
when every segment is. File deletes never consult the tables at all.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from ..tools.actions import CommandAction, FileAction


@dataclass(frozen=True, slots=True)
class CommandRule:
    """Named command prefix pattern."""

    name: str
    pattern: re.Pattern[str]

    def matches(self, command: str) -> bool:
        return bool(self.pattern.search(command))


@dataclass(slots=True)
class SafetyVerdict:
    """Outcome of classifying a single shell line."""

    safe: bool
    reason: str
    matched: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {"safe": self.safe, "reason": self.reason, "matched": self.matched}


def _rule(name: str, pattern: str) -> CommandRule:
    return CommandRule(name=name, pattern=re.compile(pattern))


DANGEROUS_COMMAND_RULES: tuple[CommandRule, ...] = (
    # File deletion
    _rule("delete", r"^(?:rm|rmdir|del|unlink|shred)\b"),
    _rule("find-mutate", r"^find\b.*\s-(?:delete|exec|execdir|ok|okdir|fprint0?|fprintf|fls)\b"),
    # Privilege escalation
    _rule("privilege", r"^(?:sudo|su|doas)\b"),
    # Package installation / removal
    _rule("npm-install", r"^npm\s+(?:install|i|add|uninstall|remove|update|upgrade|ci)\b"),
    _rule("yarn-install", r"^yarn\s+(?:add|remove|upgrade|install)\b"),
    _rule("pnpm-install", r"^pnpm\s+(?:add|remove|update|install)\b"),
    _rule("pip-install", r"^(?:pip3?|python3?\s+-m\s+pip)\s+(?:install|uninstall)\b"),
    _rule("uv-install", r"^uv\s+(?:add|remove|sync|pip\s+(?:install|uninstall))\b"),
    _rule("poetry-install", r"^poetry\s+(?:add|remove|install|update|lock)\b"),
    _rule("cargo-install", r"^cargo\s+(?:install|uninstall)\b"),
    _rule("go-install", r"^go\s+(?:install|get)\b"),
    _rule("gem-install", r"^gem\s+(?:install|uninstall)\b"),
    _rule("brew-install", r"^brew\s+(?:install|uninstall|upgrade)\b"),
    _rule("system-packages", r"^(?:apt|apt-get|yum|dnf|pacman)\b"),
    # Git operations that mutate history or remotes
    _rule("git-mutate", r"^git\s+(?:push|commit|merge|rebase|reset|checkout|pull|fetch|clone|init|clean)\b"),
    _rule("git-rewrite", r"^git\s+(?:cherry-pick|revert|stash\s+(?:pop|drop|apply|clear))\b"),
    # Moves and forced copies
    _rule("move", r"^mv\b"),
    _rule("force-copy", r"^cp\s+-r?f"),
    _rule("rsync", r"^rsync\b"),
    # Containers and cloud CLIs
    _rule("cloud", r"^(?:docker|kubectl|terraform|aws|gcloud|az)\b"),
    # Process control
    _rule("kill", r"^(?:kill|pkill|killall)\b"),
    # Network writes
    _rule("http-write", r"^curl\b.*(?:-X|--request)\s*(?:POST|PUT|DELETE|PATCH)\b"),
    _rule("wget", r"^wget\b"),
    # Database clients
    _rule("database", r"^(?:mysql|psql|mongo|mongosh|redis-cli|sqlite3)\b"),
)

SAFE_COMMAND_RULES: tuple[CommandRule, ...] = (
    # Read-only filesystem inspection
    _rule("inspect", r"^(?:ls|pwd|cat|head|tail|grep|rg|find|which|echo|wc|diff|file|stat|tree)\b"),
    # Read-only package queries
    _rule("npm-query", r"^npm\s+(?:list|ls|outdated|view|info|search|help|version|config\s+get)\b"),
    _rule("yarn-query", r"^yarn\s+(?:list|info|why|outdated|help)\b"),
    _rule("pnpm-query", r"^pnpm\s+(?:list|ls|outdated|why)\b"),
    _rule("pip-query", r"^(?:pip3?|python3?\s+-m\s+pip)\s+(?:list|show|freeze|check)\b"),
    # Build, test and lint entry points
    _rule("npm-script", r"^npm\s+(?:run\s+)?(?:dev|start|build|test|lint|format|check|compile|watch)\b"),
    _rule("yarn-script", r"^yarn\s+(?:run\s+)?(?:dev|start|build|test|lint|format|check|compile|watch)\b"),
    _rule("pnpm-script", r"^pnpm\s+(?:run\s+)?(?:dev|start|build|test|lint|format|check|compile|watch)\b"),
    _rule("npx-tool", r"^npx\s+(?:tsc|eslint|prettier|jest|vitest|playwright)\b"),
    _rule("js-runtime", r"^(?:tsc|node|deno|bun)\b"),
    _rule("cargo", r"^cargo\s+(?:build|test|check|clippy|fmt|doc)\b"),
    _rule("go", r"^go\s+(?:build|test|vet|fmt|doc)\b"),
    _rule("dotnet", r"^dotnet\s+(?:build|test|run|watch)\b"),
    _rule("python-module", r"^python3?\s+-m\s+(?:pytest|unittest|mypy|black|flake8|ruff|pylint|compileall)\b"),
    _rule("python-tool", r"^(?:pytest|mypy|flake8|pylint)\b"),
    _rule("ruff", r"^ruff\s+(?:check|format\s+--check)\b"),
    _rule("black-check", r"^black\s+.*--check\b"),
    # Read-only git
    _rule("git-read", r"^git\s+(?:status|log|diff|branch|show|remote|tag|stash\s+list|blame|shortlog)\b"),
)

_SEGMENT_SPLIT = re.compile(r"\s*(?:&&|\|\||;|\|)\s*")
_SUBSTITUTION = re.compile(r"`|\$\(")
_STREAM_MERGE = re.compile(r"\d?>&\d")
_REDIRECT = re.compile(r">")


def _first_match(rules: Iterable[CommandRule], command: str) -> CommandRule | None:
    for rule in rules:
        if rule.matches(command):
            return rule
    return None


def _classify_segment(segment: str) -> SafetyVerdict:
    dangerous = _first_match(DANGEROUS_COMMAND_RULES, segment)
    if dangerous is not None:
        return SafetyVerdict(False, f"matches dangerous rule '{dangerous.name}'", dangerous.name)
    safe = _first_match(SAFE_COMMAND_RULES, segment)
    if safe is not None:
        return SafetyVerdict(True, f"matches safe rule '{safe.name}'", safe.name)
    return SafetyVerdict(False, "not on the safe list")


def classify_command(command: str) -> SafetyVerdict:
    """Return a verdict, with the deciding rule, for ``command``."""
    trimmed = command.strip()
    if not trimmed:
        return SafetyVerdict(False, "empty command")
    if _SUBSTITUTION.search(trimmed):
        return SafetyVerdict(False, "command substitution is never auto-approved")
    if _REDIRECT.search(_STREAM_MERGE.sub("", trimmed)):
        return SafetyVerdict(False, "output redirection is never auto-approved")

    segments = [segment for segment in _SEGMENT_SPLIT.split(trimmed) if segment]
    if not segments:
        return SafetyVerdict(False, "empty command")
    matched: list[str] = []
    for segment in segments:
        verdict = _classify_segment(segment)
        if not verdict.safe:
            if len(segments) > 1:
                verdict.reason = f"segment '{segment}' {verdict.reason}"
            return verdict
        if verdict.matched:
            matched.append(verdict.matched)
    return SafetyVerdict(True, "all segments match safe rules", ",".join(matched) or None)


def is_safe(command: str) -> bool:
    """Return ``True`` when ``command`` may run without approval."""
    return classify_command(command).safe


def requires_approval(action: FileAction | CommandAction) -> bool:
    """Return ``True`` when ``action`` must pass through explicit approval."""
    if getattr(action, "op", None) == "delete":
        return True
    return bool(getattr(action, "is_dangerous", False))


__all__ = [
    "CommandRule",
    "DANGEROUS_COMMAND_RULES",
    "SAFE_COMMAND_RULES",
    "SafetyVerdict",
    "classify_command",
    "is_safe",
    "requires_approval",
]
