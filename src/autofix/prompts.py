"""Prompt templates shared by the fix engine."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Sequence

from .context_builder import ErrorContext, ProjectProfile
from .tools.errors import ParsedError

FIX_SYSTEM_PROMPT = (
    "You repair build, lint, type and test failures in a developer's workspace. "
    "Reply with complete corrected files in fenced code blocks whose info string is "
    "`language:relative/path`, and put any shell command in a ```bash block. "
    "Fix only the reported problem and do not refactor unrelated code."
)

MAX_OUTPUT_CHARS = 2_000
MAX_PROMPT_IMPORTS = 10

_FENCE_LANGUAGES = {
    ".py": "python",
    ".pyi": "python",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".jsx": "jsx",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".vue": "vue",
    ".svelte": "svelte",
    ".css": "css",
    ".scss": "scss",
    ".sass": "sass",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".dart": "dart",
    ".swift": "swift",
    ".kt": "kotlin",
    ".kts": "kotlin",
    ".gradle": "groovy",
    ".go": "go",
    ".rs": "rust",
    ".html": "html",
    ".md": "markdown",
}


def fence_language(path: str | None) -> str:
    """Return the code fence language used for ``path``."""
    if not path:
        return "typescript"
    return _FENCE_LANGUAGES.get(PurePosixPath(path).suffix.lower(), "text")


def render_error_details(error: ParsedError, *, origin: str | None = None) -> str:
    kind = error.kind.value
    if error.framework:
        kind = f"{kind} ({error.framework})"
    lines = ["## Error Details"]
    if origin:
        lines.append(f"- **Source:** {origin}")
    lines.append(f"- **Type:** {kind}")
    lines.append(f"- **Severity:** {error.severity}")
    lines.append(f"- **Message:** {error.message}")
    if error.file:
        lines.append(f"- **File:** {error.file}")
    if error.line:
        position = f"{error.line}:{error.column}" if error.column else str(error.line)
        lines.append(f"- **Line:** {position}")
    if error.code:
        lines.append(f"- **Code:** {error.code}")
    if error.rule:
        lines.append(f"- **Rule:** {error.rule}")
    return "\n".join(lines)


def render_related_errors(related: Sequence[ParsedError]) -> str:
    if not related:
        return ""
    body = "\n".join(
        f"{index}. Line {error.line if error.line is not None else '?'}: [{error.kind.value}] {error.message}"
        for index, error in enumerate(related, start=1)
    )
    return f"## Other Errors in Same File (fix if related)\n{body}"


def render_project_profile(profile: ProjectProfile | None) -> str:
    if profile is None or (profile.framework == "unknown" and not profile.features):
        return ""
    features = ", ".join(profile.features) or "none detected"
    mobile = " (mobile)" if profile.mobile else ""
    return f"## Project\n- **Framework:** {profile.framework}{mobile}\n- **Features:** {features}"


def _block(title: str, body: str) -> str:
    return f"## {title}\n```\n{body}\n```"


def build_fix_prompt(
    error: ParsedError,
    context: ErrorContext,
    *,
    profile: ProjectProfile | None = None,
    origin: str | None = None,
) -> str:
    """Render the markdown fix request sent to the model for ``error``."""
    sections = ["# Error Fix Request", render_error_details(error, origin=origin)]

    project = render_project_profile(profile)
    if project:
        sections.append(project)
    if error.suggestion:
        sections.append(f"## Suggestion\n{error.suggestion}")
    if context.surrounding_lines:
        sections.append(_block("Code Context", "\n".join(context.surrounding_lines)))
    if context.imports:
        sections.append(_block("Current Imports", "\n".join(context.imports[:MAX_PROMPT_IMPORTS])))
    if context.exports:
        sections.append(_block("Current Exports", "\n".join(context.exports)))
    if context.dependencies:
        listed = "\n".join(f"- {name}: {version}" for name, version in sorted(context.dependencies.items()))
        sections.append(f"## Declared Dependencies\n{listed}")
    if context.previous_messages:
        listed = "\n".join(f"- {message}" for message in context.previous_messages)
        sections.append(f"## Earlier Errors in This File\n{listed}")
    if context.output:
        sections.append(_block("Full Error Output", context.output[:MAX_OUTPUT_CHARS]))

    target = error.file or "path/to/file.ts"
    sections.append(
        "## Instructions\n"
        "1. Analyze the error and identify the root cause\n"
        "2. Provide the EXACT fix with the correct file path and full corrected code\n"
        "3. If it's a missing module, suggest the install command in a ```bash block\n"
        "4. Format your response with code blocks indicating the file path:\n"
        f"   ```{fence_language(error.file)}:{target}\n"
        "   // corrected code here\n"
        "   ```\n"
        "5. Be concise and fix ONLY the error, don't refactor unrelated code"
    )

    related = render_related_errors(context.related)
    if related:
        sections.append(related)
    return "\n\n".join(sections) + "\n"


__all__ = [
    "FIX_SYSTEM_PROMPT",
    "MAX_OUTPUT_CHARS",
    "build_fix_prompt",
    "fence_language",
    "render_error_details",
    "render_project_profile",
    "render_related_errors",
]
