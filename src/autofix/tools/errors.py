"""Error classification for compiler, linter, test runner and runtime output.

The classifier is a declarative table of :class:`ErrorRule` records. Each rule
owns one or more regular expressions whose named groups (``file``, ``line``,
``column``, ``code``, ``rule``, ``severity``, ``message`` and any free-form
group used by a message template) are lifted into :class:`ParsedError`
records. The matching loop is generic: supporting another ecosystem means
appending a rule, never touching :func:`classify`.

Classification is best-effort by design. Output that carries error indicators
but matches no rule produces no records; callers see that situation as a
classification miss through :func:`analyze_output`.
"""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Literal, Mapping, Sequence

LOGGER = logging.getLogger(__name__)

Severity = Literal["error", "warning", "info"]


class ErrorKind(str, Enum):
    """Closed set of error categories used for prioritisation."""

    SYNTAX = "syntax"
    TYPE_ERROR = "type-error"
    MISSING_MODULE = "missing-module"
    LINT = "lint"
    RUNTIME = "runtime"
    BUILD = "build"
    TEST = "test"
    DEPENDENCY = "dependency"
    STYLE = "style"
    FRAMEWORK = "framework"
    UNKNOWN = "unknown"


ErrorIdentity = tuple[str, "str | None", "int | None"]


@dataclass(slots=True)
class ParsedError:
    """One detected failure."""

    kind: ErrorKind
    message: str
    severity: Severity = "error"
    file: str | None = None
    line: int | None = None
    column: int | None = None
    end_line: int | None = None
    end_column: int | None = None
    code: str | None = None
    rule: str | None = None
    framework: str | None = None
    source: str | None = None
    suggestion: str | None = None
    raw_text: str = ""

    @property
    def identity(self) -> ErrorIdentity:
        return (self.message, self.file, self.line)

    def location(self) -> str:
        if not self.file:
            return "(unknown)"
        if self.line is None:
            return self.file
        if self.column is None:
            return f"{self.file}:{self.line}"
        return f"{self.file}:{self.line}:{self.column}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity,
            "message": self.message,
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "end_line": self.end_line,
            "end_column": self.end_column,
            "code": self.code,
            "rule": self.rule,
            "framework": self.framework,
            "source": self.source,
            "suggestion": self.suggestion,
        }


Suggestion = Callable[[str], "str | None"]
Extractor = Callable[["re.Match[str]", str], Mapping[str, Any]]


@dataclass(frozen=True, slots=True)
class ErrorPattern:
    """Compiled regex plus per-pattern overrides."""

    regex: re.Pattern[str]
    severity: Severity | None = None
    message_template: str | None = None


@dataclass(frozen=True, slots=True)
class ErrorRule:
    """Table entry mapping a family of patterns to one error kind."""

    name: str
    kind: ErrorKind
    patterns: tuple[ErrorPattern, ...]
    source: str | None = None
    framework: str | None = None
    severity: Severity = "error"
    message_template: str | None = None
    suggestion: Suggestion | str | None = None
    extract: Extractor | None = None

    def build(self, match: "re.Match[str]", pattern: ErrorPattern, text: str) -> ParsedError | None:
        values: dict[str, Any] = {
            key: value.strip() for key, value in match.groupdict().items() if isinstance(value, str)
        }
        if self.extract is not None:
            values.update({key: value for key, value in self.extract(match, text).items() if value is not None})
        _derive_module_names(values)

        matched_text = match.group(0)
        template = pattern.message_template or self.message_template
        message = _render(template, values) if template else values.get("message", "")
        message = str(message).strip() or matched_text.strip()
        if not message:
            return None

        kind = values.get("kind")
        if not isinstance(kind, ErrorKind):
            kind = self.kind

        if isinstance(self.suggestion, str):
            suggestion: str | None = _render(self.suggestion, values) or None
        elif self.suggestion is not None:
            suggestion = self.suggestion(matched_text)
        else:
            suggestion = None

        file_value = values.get("file")
        return ParsedError(
            kind=kind,
            message=message,
            severity=_normalise_severity(values.get("severity")) or pattern.severity or self.severity,
            file=_normalise_path(file_value) if file_value else None,
            line=_coerce_positive_int(values.get("line")),
            column=_coerce_positive_int(values.get("column")),
            code=values.get("code") or None,
            rule=values.get("rule") or None,
            framework=self.framework,
            source=self.source,
            suggestion=suggestion,
            raw_text=matched_text,
        )


def _p(
    pattern: str,
    flags: int = 0,
    *,
    severity: Severity | None = None,
    message_template: str | None = None,
) -> ErrorPattern:
    return ErrorPattern(
        regex=re.compile(pattern, flags),
        severity=severity,
        message_template=message_template,
    )


class _SafeDict(dict):
    """`str.format_map` helper that tolerates missing keys."""

    def __missing__(self, key: str) -> str:
        return ""


def _render(template: str, values: Mapping[str, Any]) -> str:
    return template.format_map(_SafeDict(values)).strip()


def _derive_module_names(values: dict[str, Any]) -> None:
    module = values.get("module")
    if not isinstance(module, str) or not module:
        return
    if module.startswith("@") and module.count("/") >= 1:
        values.setdefault("package", "/".join(module.split("/")[:2]))
    else:
        values.setdefault("package", module.split("/")[0])
    values.setdefault("top_module", module.split(".")[0])


def _normalise_path(path: str) -> str:
    """Return a consistent, forward-slash path for findings."""
    normalized = path.strip().strip("'\"")
    if "\\" in normalized:
        normalized = normalized.replace("\\", "/")
    return normalized


def _coerce_positive_int(value: Any) -> int | None:
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return None
        return parsed if parsed > 0 else None
    return None


def _normalise_severity(value: Any) -> Severity | None:
    if not isinstance(value, str) or not value:
        return None
    lowered = value.lower()
    if lowered.startswith("warn"):
        return "warning"
    if lowered in {"note", "info", "hint"}:
        return "info"
    if lowered in {"error", "fatal", "e"}:
        return "error"
    return None


# --------------------------------------------------------------------------- suggestions
def _first_hint(hints: Sequence[tuple[str, str]]) -> Suggestion:
    compiled = tuple((re.compile(needle, re.IGNORECASE), hint) for needle, hint in hints)

    def _suggest(text: str) -> str | None:
        for needle, hint in compiled:
            if needle.search(text):
                return hint
        return None

    return _suggest


_REACT_HINTS = _first_hint(
    (
        (r"Invalid hook call", "Hooks can only be called at the top level of a function component. Check for conditional hook calls or ensure you're using React 16.8+."),
        (r'unique "key" prop', "Add a unique key prop to each item in your list. Use the item's id or index as the key."),
        (r"missing dependency", "Add the missing dependency to the useEffect/useCallback dependency array, or wrap the function in useCallback."),
        (r"Cannot read propert", "Check for null/undefined values. Use optional chaining (?.) or add a null check before accessing properties."),
    )
)
_NEXT_HINTS = _first_hint(
    (
        (r"use client|needs (?:useState|useEffect|useContext)", 'Add "use client" directive at the top of the file when using client-side hooks like useState, useEffect.'),
        (r"Hydration failed", "Ensure server-rendered content matches client content. Avoid using typeof window checks for conditional rendering."),
        (r"Image with src", "Provide width and height props to next/image, or use fill prop with a positioned parent."),
    )
)
_VUE_HINTS = _first_hint(
    ((r"mutating a prop", "Don't modify props directly. Emit an event to the parent component or use a local data property."),)
)
_REACT_NATIVE_HINTS = _first_hint(
    (
        (r"Unable to resolve module", "Try: 1) Clear Metro cache: npx react-native start --reset-cache, 2) Delete node_modules and reinstall."),
        (r"Pod install", "Run: cd ios && pod install --repo-update && cd .."),
        (r"Could not connect to development server", "Ensure Metro bundler is running. Try: npx react-native start --reset-cache"),
        (r"not been registered", "Check that your app name matches in index.js and app.json. Restart the Metro bundler."),
    )
)
_EXPO_HINTS = _first_hint(
    ((r"not.*installed", "Run: npx expo install <package-name> to install compatible versions."),)
)
_FLUTTER_HINTS = _first_hint(
    (
        (r"RenderFlex overflowed", "Wrap the overflowing widget with SingleChildScrollView, Expanded, or Flexible."),
        (r"Null check operator", "Use null safety: check for null before using ! or use ?. for optional chaining."),
        (r"pub get failed", "Run: flutter clean && flutter pub get"),
    )
)
_XCODE_HINTS = _first_hint(
    ((r"Signing", "Go to Xcode > Signing & Capabilities and configure your team and provisioning profile."),)
)
_GRADLE_HINTS = _first_hint(
    (
        (r"SDK location not found", "Set ANDROID_HOME environment variable or create local.properties with sdk.dir path."),
        (r"Manifest merger failed", "Check for conflicting permissions or attributes in AndroidManifest.xml. Use tools:replace to override."),
    )
)
_TAILWIND_HINTS = _first_hint(
    ((r"content.*configuration", 'Add content paths in tailwind.config.js: content: ["./src/**/*.{js,ts,jsx,tsx}"]'),)
)
_JEST_HINTS = _first_hint(
    ((r"unexpected token", "Configure Jest transform for the file type. For TypeScript, add ts-jest or babel-jest."),)
)
_NPM_HINTS = _first_hint(
    (
        (r"ERESOLVE", "Try: npm install --legacy-peer-deps or npm install --force"),
        (r"EACCES", "Fix npm permissions or use a node version manager like nvm."),
    )
)
_COCOAPODS_HINTS = _first_hint(
    ((r"compatible versions", "Try: cd ios && pod install --repo-update && cd .."),)
)
_PIP_HINTS = _first_hint(
    (
        (r"ResolutionImpossible|conflicting dependencies", "Relax the conflicting version pins in requirements or pyproject.toml."),
        (r"No matching distribution|Could not find a version", "Check the package name and the supported Python versions for the requirement."),
    )
)


# --------------------------------------------------------------------------- extractors
_STYLISH_HEADER = re.compile(r"^(?P<file>[^\s].*\.[A-Za-z]+)\s*$")
_FILE_MENTION = re.compile(r"(?:at|in|from)\s+([^\s:()]+\.[a-z]+)", re.IGNORECASE)
_TRACEBACK_FRAME = re.compile(r'File "(?P<file>[^"]+)", line (?P<line>\d+)')
_PYTHON_SYNTAX_EXCEPTIONS = {"SyntaxError", "IndentationError", "TabError"}
_PYTHON_IMPORT_EXCEPTIONS = {"ModuleNotFoundError", "ImportError"}


def _eslint_stylish_file(match: "re.Match[str]", text: str) -> Mapping[str, Any]:
    """Recover the file header that precedes a stylish-format ESLint row."""
    preceding = text[: match.start()].splitlines()
    for line in reversed(preceding):
        if not line.strip():
            continue
        if line[:1].isspace():
            continue
        header = _STYLISH_HEADER.match(line)
        return {"file": header.group("file")} if header else {}
    return {}


def _file_from_output(match: "re.Match[str]", text: str) -> Mapping[str, Any]:
    if match.groupdict().get("file"):
        return {}
    mention = _FILE_MENTION.search(text)
    return {"file": mention.group(1)} if mention else {}


def _python_traceback(match: "re.Match[str]", text: str) -> Mapping[str, Any]:
    frames = list(_TRACEBACK_FRAME.finditer(match.group("body") or ""))
    values: dict[str, Any] = {}
    if frames:
        last = frames[-1]
        values["file"] = last.group("file")
        values["line"] = last.group("line")
    exception = (match.group("exc") or "").rsplit(".", 1)[-1]
    values["code"] = exception
    if exception in _PYTHON_SYNTAX_EXCEPTIONS:
        values["kind"] = ErrorKind.SYNTAX
    elif exception in _PYTHON_IMPORT_EXCEPTIONS:
        values["kind"] = ErrorKind.MISSING_MODULE
    else:
        values["kind"] = ErrorKind.RUNTIME
    return values


def _jest_suite(match: "re.Match[str]", text: str) -> Mapping[str, Any]:
    suite = match.groupdict().get("suite") or ""
    if re.search(r"\.(?:test|spec)\.[cm]?[jt]sx?$", suite):
        return {"file": suite}
    return {}


# --------------------------------------------------------------------------- rule table
ERROR_RULES: tuple[ErrorRule, ...] = (
    # TypeScript / JavaScript
    ErrorRule(
        name="typescript",
        kind=ErrorKind.TYPE_ERROR,
        source="typescript",
        patterns=(
            _p(r"(?P<file>[^\s()]+\.[cm]?tsx?)\((?P<line>\d+),(?P<column>\d+)\):\s*error\s+(?P<code>TS\d+):\s*(?P<message>.+)"),
            _p(r"(?P<file>[^\s]+\.[cm]?tsx?):(?P<line>\d+):(?P<column>\d+)\s*-\s*error\s+(?P<code>TS\d+):\s*(?P<message>.+)"),
            _p(r"error\s+(?P<code>TS\d+):\s*(?P<message>.+?)\s+at\s+(?P<file>[^\s]+):(?P<line>\d+):(?P<column>\d+)"),
        ),
    ),
    ErrorRule(
        name="javascript",
        kind=ErrorKind.RUNTIME,
        source="javascript",
        patterns=(
            _p(r"(?P<file>[^\s]+\.[cm]?jsx?):(?P<line>\d+):?(?P<column>\d+)?\s*[-\u2013]\s*(?P<message>.+)"),
            _p(
                r"at\s+(?P<func>[^\s]+)\s+\((?P<file>[^\s]+\.[cm]?jsx?):(?P<line>\d+):(?P<column>\d+)\)",
                message_template="Error at {func}",
            ),
        ),
    ),
    # Linters
    ErrorRule(
        name="eslint",
        kind=ErrorKind.LINT,
        source="eslint",
        patterns=(
            _p(
                r"^(?P<file>[^\s:]+):(?P<line>\d+):(?P<column>\d+)\s+(?P<severity>error|warning)\s+(?P<message>.+?)\s+(?P<rule>[\w/@-]+)$",
                re.MULTILINE,
            ),
            _p(
                r"^\s+(?P<line>\d+):(?P<column>\d+)\s+(?P<severity>error|warning)\s+(?P<message>.+?)\s+(?P<rule>[\w/@-]+)$",
                re.MULTILINE,
            ),
        ),
        extract=_eslint_stylish_file,
    ),
    ErrorRule(
        name="ruff",
        kind=ErrorKind.LINT,
        source="ruff",
        patterns=(
            _p(
                r"^(?P<file>[^\s:]+\.pyi?):(?P<line>\d+):(?P<column>\d+):\s*(?P<code>[A-Z]+\d+)\s+(?:\[\*\]\s*)?(?P<message>.+)$",
                re.MULTILINE,
            ),
        ),
    ),
    ErrorRule(
        name="mypy",
        kind=ErrorKind.TYPE_ERROR,
        source="mypy",
        patterns=(
            _p(
                r"^(?P<file>[^\s:]+\.pyi?):(?P<line>\d+):(?:(?P<column>\d+):)?\s*(?P<severity>error|warning|note):\s*(?P<message>.+?)(?:\s+\[(?P<code>[\w-]+)\])?$",
                re.MULTILINE,
            ),
        ),
    ),
    # Python runtime
    ErrorRule(
        name="python-traceback",
        kind=ErrorKind.RUNTIME,
        source="python",
        patterns=(
            _p(
                r"Traceback \(most recent call last\):\n(?P<body>(?:[ \t]+.*\n)+)(?P<exc>[A-Za-z_][\w.]*):?[ \t]*(?P<message>.*)",
            ),
        ),
        message_template="{exc}: {message}",
        extract=_python_traceback,
    ),
    ErrorRule(
        name="python-syntax",
        kind=ErrorKind.SYNTAX,
        source="python",
        patterns=(
            _p(
                r'^\s*File "(?P<file>[^"]+)", line (?P<line>\d+)\n(?:[ \t]+.*\n)*?(?P<code>SyntaxError|IndentationError|TabError):\s*(?P<message>.+)',
                re.MULTILINE,
            ),
        ),
        message_template="{code}: {message}",
    ),
    # Frameworks
    ErrorRule(
        name="react",
        kind=ErrorKind.FRAMEWORK,
        source="react",
        framework="react",
        patterns=(
            _p(
                r"Warning:\s*(?P<message>.+?)\s*(?:in|at)\s+(?P<component>\w+)\s*\((?:at\s+)?(?P<file>[^\s)]+):(?P<line>\d+):?(?P<column>\d+)?\)",
                severity="warning",
            ),
            _p(r"Invalid hook call"),
            _p(r"Cannot update a component .* while rendering a different component"),
            _p(r'Each child in a list should have a unique "key" prop', severity="warning"),
            _p(r"React Hook .* is called conditionally"),
            _p(r"React Hook .* has a missing dependency", severity="warning"),
            _p(r"Cannot read propert(?:y|ies) of (?:undefined|null)"),
        ),
        suggestion=_REACT_HINTS,
    ),
    ErrorRule(
        name="next",
        kind=ErrorKind.FRAMEWORK,
        source="next",
        framework="next",
        patterns=(
            _p(r"Error:\s*(?P<message>.+)\s*at\s+(?P<func>[^\s]+)\s*\((?P<file>[^\s]+):(?P<line>\d+):(?P<column>\d+)\)"),
            _p(r"Server Error\s*\n\s*(?P<message>.+)"),
            _p(r"Unhandled Runtime Error\s*\n\s*(?P<message>.+)"),
            _p(r"You're importing a component that needs (?:useState|useEffect|useContext)"),
            _p(r"'use client' directive"),
            _p(r'Image with src "(?P<src>[^"]+)" must use "width" and "height"'),
            _p(r"getServerSideProps.*getStaticProps.*cannot be used together"),
            _p(r"Hydration failed because"),
        ),
        suggestion=_NEXT_HINTS,
        extract=_file_from_output,
    ),
    ErrorRule(
        name="vue",
        kind=ErrorKind.FRAMEWORK,
        source="vue",
        framework="vue",
        patterns=(
            _p(r"\[Vue warn\]:\s*(?P<message>.+)", severity="warning"),
            _p(r"\[Vue error\]:\s*(?P<message>.+)"),
            _p(r"Template compilation error:\s*(?P<message>.+)"),
            _p(r"Component.*is missing template"),
            _p(r"Property.*was accessed during render but is not defined"),
            _p(r"Avoid mutating a prop directly"),
            _p(r"v-model.*cannot be used on a prop"),
        ),
        suggestion=_VUE_HINTS,
    ),
    ErrorRule(
        name="vite",
        kind=ErrorKind.BUILD,
        source="vite",
        framework="vite",
        patterns=(
            _p(r"\[vite\]:?\s*(?P<message>.+)"),
            _p(r"Pre-transform error:\s*(?P<message>.+)"),
            _p(r"Rollup failed to resolve import"),
            _p(r"ENOENT.*vite\.config"),
        ),
    ),
    ErrorRule(
        name="react-native",
        kind=ErrorKind.FRAMEWORK,
        source="react-native",
        framework="react-native",
        patterns=(
            _p(r"^\s*ERROR\s+(?P<message>.+)", re.MULTILINE),
            _p(r"^\s*WARN\s+(?P<message>.+)", re.MULTILINE, severity="warning"),
            _p(r"Invariant Violation:\s*(?P<message>.+)"),
            _p(r"Native module .* tried to override"),
            _p(r"requireNativeComponent.*was not found"),
            _p(r"ViewPropTypes will be removed", severity="warning"),
            _p(r"RCT.*module.*not available"),
            _p(r"Pod install.*failed"),
            _p(r"Metro bundler.*error", re.IGNORECASE),
            _p(r"Unable to load script.*Make sure you're", re.IGNORECASE),
            _p(r"Could not connect to development server"),
            _p(r"Application.*has not been registered"),
        ),
        suggestion=_REACT_NATIVE_HINTS,
    ),
    ErrorRule(
        name="expo",
        kind=ErrorKind.FRAMEWORK,
        source="expo",
        framework="expo",
        patterns=(
            _p(r"expo.*error", re.IGNORECASE),
            _p(r'Unable to resolve "(?P<module>[^"]+)" from', message_template="Unable to resolve {module}"),
            _p(r"This project is not configured to support"),
            _p(r"expo-.*not.*installed", re.IGNORECASE),
            _p(r"Expo SDK.*requires.*version"),
            _p(r"Cannot determine which native SDK version your project uses"),
        ),
        suggestion=_EXPO_HINTS,
    ),
    ErrorRule(
        name="flutter",
        kind=ErrorKind.FRAMEWORK,
        source="dart",
        framework="flutter",
        patterns=(
            _p(r"(?P<file>[^\s:]+\.dart):(?P<line>\d+):(?P<column>\d+):\s*Error:\s*(?P<message>.+)"),
            _p(r"\[ERROR:flutter/.*\]\s*(?P<message>.+)"),
            _p(r"The following.*error was thrown"),
            _p(r"A RenderFlex overflowed"),
            _p(r"setState\(\) called after dispose"),
            _p(r"NoSuchMethodError:\s*(?P<message>.+)"),
            _p(r"Null check operator used on a null value"),
            _p(r"type '(?P<actual>.+?)' is not a subtype of type '(?P<expected>.+?)'"),
            _p(r"pub get failed", re.IGNORECASE),
            _p(r"Could not find.*in any of the sources"),
        ),
        suggestion=_FLUTTER_HINTS,
    ),
    # Native mobile toolchains
    ErrorRule(
        name="swift",
        kind=ErrorKind.BUILD,
        source="swift",
        framework="ios",
        patterns=(
            _p(r"(?P<file>[^\s]+\.swift):(?P<line>\d+):(?P<column>\d+):\s*(?P<severity>error|warning):\s*(?P<message>.+)"),
            _p(r"Cannot find '(?P<symbol>\w+)' in scope"),
            _p(r"Value of type '(?P<type>.+?)' has no member '(?P<member>.+?)'"),
            _p(r"Type '(?P<type>.+?)' does not conform to protocol '(?P<protocol>.+?)'"),
            _p(r"Missing argument.*in call"),
        ),
    ),
    ErrorRule(
        name="xcode",
        kind=ErrorKind.BUILD,
        source="xcode",
        framework="ios",
        patterns=(
            _p(r"xcodebuild.*error", re.IGNORECASE),
            _p(r"\*\* BUILD FAILED \*\*|Build Failed"),
            _p(r"Signing.*requires"),
            _p(r"No provisioning profiles"),
            _p(r"Signing certificate.*not found"),
            _p(r'SDK "(?P<message>.+)" cannot be located'),
        ),
        suggestion=_XCODE_HINTS,
    ),
    ErrorRule(
        name="kotlin",
        kind=ErrorKind.BUILD,
        source="kotlin",
        framework="android",
        patterns=(
            _p(r"^e:\s*(?:file://)?(?P<file>[^\s:]+):(?P<line>\d+):(?P<column>\d+):?\s*(?P<message>.+)", re.MULTILINE),
            _p(r"Unresolved reference:\s*(?P<symbol>\w+)"),
            _p(r"Type mismatch:\s*(?P<message>.+)"),
            _p(r"Overload resolution ambiguity"),
            _p(r"'(?P<symbol>\w+)' is deprecated", severity="warning"),
        ),
    ),
    ErrorRule(
        name="gradle",
        kind=ErrorKind.BUILD,
        source="gradle",
        framework="android",
        patterns=(
            _p(r"FAILURE:\s*(?P<message>.+)"),
            _p(r"BUILD FAILED"),
            _p(r"Could not resolve.*dependencies"),
            _p(r"SDK location not found"),
            _p(r"Failed to find target.*SDK"),
            _p(r"Execution failed for task ':app:(?P<message>.+)'"),
            _p(r"Manifest merger failed"),
            _p(r"Duplicate class"),
        ),
        suggestion=_GRADLE_HINTS,
    ),
    # Bundlers
    ErrorRule(
        name="webpack",
        kind=ErrorKind.BUILD,
        source="webpack",
        patterns=(
            _p(r"Module build failed.*?:\s*(?P<message>.+)"),
            _p(r"Module parse failed:\s*(?P<message>.+)"),
            _p(r"ERROR in (?P<message>.+)"),
            _p(r"Invalid configuration object"),
        ),
    ),
    # Styling
    ErrorRule(
        name="css",
        kind=ErrorKind.STYLE,
        source="css",
        patterns=(
            _p(r"CssSyntaxError:\s*(?P<message>.+)"),
            _p(r"Selector.*is not pure"),
            _p(r"Unknown property:\s*(?P<message>.+)"),
        ),
    ),
    ErrorRule(
        name="tailwind",
        kind=ErrorKind.STYLE,
        source="tailwind",
        framework="tailwind",
        patterns=(
            _p(r"tailwindcss.*error", re.IGNORECASE),
            _p(r"The utility class.*does not exist"),
            _p(r"content.*configuration.*is missing"),
        ),
        suggestion=_TAILWIND_HINTS,
    ),
    ErrorRule(
        name="sass",
        kind=ErrorKind.STYLE,
        source="sass",
        patterns=(
            _p(r"SassError:\s*(?P<message>.+)"),
            _p(r"Error:\s*(?P<message>.+?)\s*on line\s*(?P<line>\d+)"),
            _p(r"Undefined variable"),
            _p(r"Undefined mixin"),
        ),
    ),
    # Test runners
    ErrorRule(
        name="jest",
        kind=ErrorKind.TEST,
        source="jest",
        framework="jest",
        patterns=(
            _p(r"^\s*FAIL\s+(?P<suite>[^\s]+)", re.MULTILINE, message_template="Test suite failed: {suite}"),
            _p(r"\u25cf\s+(?P<message>.+)"),
            _p(r"expect\(received\)\.(?P<message>.+)"),
            _p(r"Jest encountered an unexpected token"),
            _p(r"Your test suite must contain at least one test"),
        ),
        suggestion=_JEST_HINTS,
        extract=_jest_suite,
    ),
    ErrorRule(
        name="vitest",
        kind=ErrorKind.TEST,
        source="vitest",
        framework="vitest",
        patterns=(
            _p(r"AssertionError:\s*(?P<message>.+)"),
        ),
    ),
    ErrorRule(
        name="pytest",
        kind=ErrorKind.TEST,
        source="pytest",
        framework="pytest",
        patterns=(
            _p(
                r"^FAILED\s+(?P<file>[^\s:]+\.py)::(?P<test>\S+)(?:\s+-\s+(?P<reason>.+))?$",
                re.MULTILINE,
                message_template="{test} failed {reason}",
            ),
            _p(
                r"^ERROR\s+(?P<file>[^\s:]+\.py)(?:::(?P<test>\S+))?(?:\s+-\s+(?P<message>.+))?$",
                re.MULTILINE,
                message_template="Collection error {message}",
            ),
        ),
    ),
    ErrorRule(
        name="cypress",
        kind=ErrorKind.TEST,
        source="cypress",
        framework="cypress",
        patterns=(
            _p(r"CypressError:\s*(?P<message>.+)"),
            _p(r"Timed out retrying"),
            _p(r"cy\.(?P<message>.+) failed"),
        ),
    ),
    # Package managers
    ErrorRule(
        name="npm",
        kind=ErrorKind.DEPENDENCY,
        source="npm",
        patterns=(
            _p(r"npm ERR!\s*(?P<message>.+)"),
            _p(r"ERESOLVE unable to resolve dependency tree"),
            _p(r"npm WARN deprecated", severity="warning"),
            _p(r"peer dep missing:\s*(?P<message>.+)"),
            _p(r"ENOENT.*package\.json"),
            _p(r"EACCES.*permission denied"),
        ),
        suggestion=_NPM_HINTS,
    ),
    ErrorRule(
        name="yarn",
        kind=ErrorKind.DEPENDENCY,
        source="yarn",
        patterns=(
            _p(r"^error\s+(?P<message>.+)", re.MULTILINE),
            _p(r"YN0001:\s*(?P<message>.+)"),
            _p(r"Couldn't find package"),
        ),
    ),
    ErrorRule(
        name="pip",
        kind=ErrorKind.DEPENDENCY,
        source="pip",
        patterns=(
            _p(r"ERROR: Could not find a version that satisfies the requirement (?P<requirement>\S+)",
               message_template="No installable version of {requirement}"),
            _p(r"ERROR: No matching distribution found for (?P<requirement>\S+)",
               message_template="No matching distribution for {requirement}"),
            _p(r"ResolutionImpossible"),
        ),
        suggestion=_PIP_HINTS,
    ),
    ErrorRule(
        name="cocoapods",
        kind=ErrorKind.DEPENDENCY,
        source="cocoapods",
        framework="ios",
        patterns=(
            _p(r"\[!\]\s*(?P<message>.+)"),
            _p(r"Unable to find a specification for"),
            _p(r"pod install.*failed", re.IGNORECASE),
            _p(r"CocoaPods could not find compatible versions"),
        ),
        suggestion=_COCOAPODS_HINTS,
    ),
    # Generic runtime / module / syntax families
    ErrorRule(
        name="runtime",
        kind=ErrorKind.RUNTIME,
        source="runtime",
        patterns=(
            _p(r"TypeError:\s*(?P<message>.+)"),
            _p(r"ReferenceError:\s*(?P<message>.+)"),
            _p(r"RangeError:\s*(?P<message>.+)"),
            _p(r"Uncaught.*Error:\s*(?P<message>.+)"),
            _p(r"Error:\s*(?P<message>.+)"),
        ),
    ),
    ErrorRule(
        name="module",
        kind=ErrorKind.MISSING_MODULE,
        source="module",
        message_template="Module not found: {module}",
        suggestion="Try running: npm install {package}",
        patterns=(
            _p(r"Cannot find module ['\"](?P<module>[^'\"]+)['\"]"),
            _p(r"Module not found:\s*(?:Error:\s*)?Can't resolve '(?P<module>[^']+)'"),
            _p(r"Could not resolve ['\"](?P<module>[^'\"]+)['\"]"),
            _p(r"Failed to resolve import \"(?P<module>[^\"]+)\""),
            _p(r"Unable to resolve module (?P<module>[^\s]+)"),
            _p(r"Can't resolve '(?P<module>[^']+)'"),
        ),
    ),
    ErrorRule(
        name="python-module",
        kind=ErrorKind.MISSING_MODULE,
        source="python",
        message_template="Module not found: {module}",
        suggestion="Add {top_module} to the project dependencies and install it.",
        patterns=(
            _p(r"ModuleNotFoundError: No module named '(?P<module>[^']+)'"),
        ),
    ),
    ErrorRule(
        name="syntax",
        kind=ErrorKind.SYNTAX,
        source="syntax",
        patterns=(
            _p(r"SyntaxError:\s*(?P<message>.+)"),
            _p(r"Unexpected token"),
            _p(r"Unexpected end of"),
            _p(r"Unterminated"),
            _p(r"Invalid or unexpected token"),
        ),
    ),
)


_ERROR_INDICATORS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\berror\b", re.IGNORECASE),
    re.compile(r"\bfailed\b", re.IGNORECASE),
    re.compile(r"\bfailure\b", re.IGNORECASE),
    re.compile(r"FAIL\s"),
    re.compile(r"SyntaxError|TypeError|ReferenceError"),
    re.compile(r"Cannot find module|Module not found|ModuleNotFoundError"),
    re.compile(r"npm ERR!"),
    re.compile(r"Build Failed", re.IGNORECASE),
    re.compile(r"ENOENT"),
    re.compile(r"Invariant Violation"),
    re.compile(r"Unhandled.*Error"),
    re.compile(r"Traceback \(most recent call last\)"),
    re.compile(r"\[!\]"),
    re.compile(r"\u25cf"),
    re.compile(r"^\S+\.pyi?:\d+:\d+: [A-Z]+\d+ ", re.MULTILINE),
)

_SEVERITY_RANK: dict[str, int] = {"error": 0, "warning": 1, "info": 2}

_KIND_PRIORITY: dict[ErrorKind, int] = {
    ErrorKind.SYNTAX: 1,
    ErrorKind.TYPE_ERROR: 2,
    ErrorKind.MISSING_MODULE: 3,
    ErrorKind.LINT: 4,
    ErrorKind.RUNTIME: 5,
    ErrorKind.BUILD: 6,
}
_DEFAULT_PRIORITY = 10


def has_errors(raw_text: str) -> bool:
    """Cheap pre-filter deciding whether ``raw_text`` is worth classifying."""
    if not raw_text:
        return False
    return any(indicator.search(raw_text) for indicator in _ERROR_INDICATORS)


def classify(raw_text: str, rules: Sequence[ErrorRule] = ERROR_RULES) -> list[ParsedError]:
    """Return deduplicated, ordered error records found in ``raw_text``."""
    if not has_errors(raw_text):
        return []

    text = raw_text.replace("\r\n", "\n")
    errors: list[ParsedError] = []
    seen: set[ErrorIdentity] = set()
    for rule in rules:
        for pattern in rule.patterns:
            for match in pattern.regex.finditer(text):
                try:
                    error = rule.build(match, pattern, text)
                except (IndexError, KeyError, TypeError, ValueError):
                    LOGGER.debug("Rule %s failed to extract a record", rule.name, exc_info=True)
                    continue
                if error is None or error.identity in seen:
                    continue
                seen.add(error.identity)
                errors.append(error)

    errors.sort(key=lambda item: (_SEVERITY_RANK.get(item.severity, 3), item.line or 0))
    return errors


def fix_priority(error: ParsedError) -> int:
    """Lower values are fixed first."""
    return _KIND_PRIORITY.get(error.kind, _DEFAULT_PRIORITY)


def sort_by_priority(errors: Iterable[ParsedError]) -> list[ParsedError]:
    return sorted(errors, key=fix_priority)


def group_by_file(errors: Iterable[ParsedError]) -> "OrderedDict[str | None, list[ParsedError]]":
    """Group errors by file, preserving first-seen order of the files."""
    grouped: "OrderedDict[str | None, list[ParsedError]]" = OrderedDict()
    for error in errors:
        grouped.setdefault(error.file, []).append(error)
    return grouped


def summarize_errors(errors: Sequence[ParsedError]) -> str:
    lines = [f"Found {len(errors)} error(s):"]
    for index, error in enumerate(errors, start=1):
        entry = f"{index}. {error.kind.value}: {error.message}"
        if error.file:
            entry += f" in {error.file}"
            if error.line is not None:
                entry += f":{error.line}"
        lines.append(entry)
    return "\n".join(lines)


@dataclass(slots=True)
class OutputAnalysis:
    """Result of inspecting a block of tool output."""

    has_errors: bool
    errors: list[ParsedError] = field(default_factory=list)
    summary: str = ""

    @property
    def classification_miss(self) -> bool:
        return self.has_errors and not self.errors


def analyze_output(raw_text: str) -> OutputAnalysis:
    """Classify ``raw_text`` and render a short human readable summary."""
    indicators = has_errors(raw_text)
    errors = classify(raw_text) if indicators else []
    if errors:
        summary = summarize_errors(errors)
    elif indicators:
        summary = "Build failed with errors (could not parse specific issues)"
    else:
        summary = "No errors detected"
    return OutputAnalysis(has_errors=indicators, errors=errors, summary=summary)


__all__ = [
    "ERROR_RULES",
    "ErrorIdentity",
    "ErrorKind",
    "ErrorPattern",
    "ErrorRule",
    "OutputAnalysis",
    "ParsedError",
    "Severity",
    "analyze_output",
    "classify",
    "fix_priority",
    "group_by_file",
    "has_errors",
    "sort_by_priority",
    "summarize_errors",
]
