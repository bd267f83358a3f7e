"""Gather the source context that accompanies a fix request."""

from __future__ import annotations

import json
import logging
import re
from collections import defaultdict, deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Iterable, Sequence

import tomllib

from .tools.errors import ParsedError

LOGGER = logging.getLogger(__name__)

DEFAULT_CONTEXT_RADIUS = 15
_MAX_IMPORTS = 20
_MAX_EXPORTS = 10
_MAX_PREVIOUS = 5
_HISTORY_PER_FILE = 50

_IMPORT_LINE = re.compile(r"^(?:import\s|from\s+\S+\s+import\s|const\s.*=\s*require\()")
_EXPORT_LINE = re.compile(r"^(?:export\s|__all__\s*=)")
_REQUIREMENT_NAME = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)(?:\[[^\]]*\])?\s*(.*)$")


@dataclass(slots=True)
class ErrorContext:
    """Source context assembled for one target error."""

    surrounding_lines: list[str] = field(default_factory=list)
    imports: list[str] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)
    dependencies: dict[str, str] = field(default_factory=dict)
    previous_messages: list[str] = field(default_factory=list)
    related: list[ParsedError] = field(default_factory=list)
    output: str = ""
    file_exists: bool = False


@dataclass(slots=True)
class ProjectProfile:
    """Coarse description of the workspace toolchain."""

    framework: str = "unknown"
    mobile: bool = False
    features: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"framework": self.framework, "mobile": self.mobile, "features": list(self.features)}


def _load_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        LOGGER.debug("Unable to read %s", path, exc_info=True)
        return {}
    return data if isinstance(data, dict) else {}


def _load_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError):
        LOGGER.debug("Unable to read %s", path, exc_info=True)
        return {}


def _node_dependencies(root: Path) -> dict[str, str]:
    package = _load_json(root / "package.json")
    merged: dict[str, str] = {}
    for section in ("dependencies", "devDependencies"):
        values = package.get(section)
        if isinstance(values, dict):
            merged.update({str(name): str(version) for name, version in values.items()})
    return merged


def _python_dependencies(root: Path) -> dict[str, str]:
    pyproject = _load_toml(root / "pyproject.toml")
    project = pyproject.get("project") if isinstance(pyproject.get("project"), dict) else {}
    requirements: list[str] = list(project.get("dependencies") or [])
    optional = project.get("optional-dependencies")
    if isinstance(optional, dict):
        for group in optional.values():
            requirements.extend(group or [])
    merged: dict[str, str] = {}
    for requirement in requirements:
        if not isinstance(requirement, str):
            continue
        match = _REQUIREMENT_NAME.match(requirement)
        if match:
            merged[match.group(1)] = match.group(2).strip() or "*"
    return merged


def collect_dependencies(root: Path) -> dict[str, str]:
    """Merge declared Node and Python dependencies for ``root``."""
    merged = _node_dependencies(root)
    merged.update(_python_dependencies(root))
    return merged


def detect_project_type(root: Path | str) -> ProjectProfile:
    """Inspect well-known manifest files to describe the project."""
    root = Path(root)
    profile = ProjectProfile()
    features = profile.features

    if (root / "package.json").is_file():
        deps = _node_dependencies(root)
        if "next" in deps:
            profile.framework = "next"
            features.append("ssr")
        elif "gatsby" in deps:
            profile.framework = "gatsby"
            features.append("ssg")
        elif "remix" in deps:
            profile.framework = "remix"
            features.append("ssr")
        elif "nuxt" in deps:
            profile.framework = "nuxt"
            features.extend(["vue", "ssr"])
        elif "vue" in deps:
            profile.framework = "vue"
        elif "react-native" in deps or "expo" in deps:
            profile.framework = "react-native"
            profile.mobile = True
        elif "react" in deps:
            profile.framework = "react"
        elif "svelte" in deps:
            profile.framework = "svelte"
        elif "angular" in deps or "@angular/core" in deps:
            profile.framework = "angular"

        for package, feature in (
            ("typescript", "typescript"),
            ("tailwindcss", "tailwind"),
            ("eslint", "eslint"),
            ("prettier", "prettier"),
        ):
            if package in deps:
                features.append(feature)
        if "jest" in deps or "vitest" in deps:
            features.append("testing")

    python_markers = ("pyproject.toml", "setup.py", "setup.cfg", "requirements.txt")
    if any((root / marker).is_file() for marker in python_markers):
        features.append("python")
        deps = {name.lower() for name in _python_dependencies(root)}
        if profile.framework == "unknown":
            for package in ("django", "fastapi", "flask"):
                if package in deps:
                    profile.framework = package
                    break
            else:
                profile.framework = "python"
        for tool in ("pytest", "mypy", "ruff"):
            if tool in deps:
                features.append(tool)

    if (root / "pubspec.yaml").is_file():
        profile.framework = "flutter"
        profile.mobile = True
        features.append("dart")
    if (root / "ios").is_dir():
        features.append("ios")
        profile.mobile = True
    if (root / "android").is_dir():
        features.append("android")
        profile.mobile = True

    return profile


class ErrorContextBuilder:
    """Collect surrounding source, imports and history for a target error."""

    def __init__(
        self,
        workspace_root: Path | str,
        *,
        radius: int = DEFAULT_CONTEXT_RADIUS,
        read_file: Callable[[str], str | None] | None = None,
    ) -> None:
        self.workspace_root = Path(workspace_root)
        self.radius = max(0, radius)
        self._read_file = read_file or self._read_from_disk
        self._history: dict[str | None, Deque[str]] = defaultdict(lambda: deque(maxlen=_HISTORY_PER_FILE))

    def remember(self, errors: Iterable[ParsedError]) -> None:
        """Record messages seen for each file so later prompts can cite them."""
        for error in errors:
            self._history[error.file].append(error.message)

    def forget(self) -> None:
        self._history.clear()

    def previous_messages(self, error: ParsedError) -> list[str]:
        messages = [message for message in self._history.get(error.file, ()) if message != error.message]
        return messages[-_MAX_PREVIOUS:]

    def build(
        self,
        error: ParsedError,
        *,
        output: str = "",
        related: Sequence[ParsedError] = (),
    ) -> ErrorContext:
        context = ErrorContext(
            previous_messages=self.previous_messages(error),
            related=list(related),
            output=output or error.raw_text,
        )
        if not error.file:
            return context

        content = self._read_file(error.file)
        if content is None:
            return context
        context.file_exists = True
        lines = content.splitlines()
        if error.line:
            context.surrounding_lines = self.surrounding_lines(lines, error.line)
        context.imports = [line for line in lines if _IMPORT_LINE.match(line)][:_MAX_IMPORTS]
        context.exports = [line for line in lines if _EXPORT_LINE.match(line)][:_MAX_EXPORTS]
        context.dependencies = collect_dependencies(self.workspace_root)
        return context

    def surrounding_lines(self, lines: Sequence[str], target: int) -> list[str]:
        start = max(1, target - self.radius)
        end = min(len(lines), target + self.radius)
        rendered: list[str] = []
        for number in range(start, end + 1):
            marker = " >>> " if number == target else "     "
            rendered.append(f"{marker}{number}: {lines[number - 1]}")
        return rendered

    def _read_from_disk(self, path: str) -> str | None:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.workspace_root / candidate
        if not candidate.is_file():
            return None
        try:
            return candidate.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            LOGGER.debug("Unable to read context for %s", path, exc_info=True)
            return None


__all__ = [
    "DEFAULT_CONTEXT_RADIUS",
    "ErrorContext",
    "ErrorContextBuilder",
    "ProjectProfile",
    "collect_dependencies",
    "detect_project_type",
]
