"""Queue host diagnostics and feed them to the fix engine one file at a time.

The host (an editor or a CLI wrapper) reports two kinds of events:

* ``on_diagnostics_changed`` whenever its live analysis for a set of files
  changes. These callbacks only enqueue and may arrive from any thread.
* ``on_document_saved`` when the user saves a file. With auto-fix-on-save
  enabled this (re)starts a per-file debounce timer; a later save for the same
  file supersedes the earlier timer so only the latest one fires.

A fired timer moves the file to a FIFO ready list. Ready files are drained by
the engine strictly one at a time.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter, OrderedDict, deque
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Deque, Iterable, Literal, Mapping, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import DiagnosticsSettings
from .exceptions import AutofixError
from .tools.errors import ErrorKind, ParsedError, Severity

if TYPE_CHECKING:
    from .engine import FixBatchResult, FixEngine
    from .utils.cancellation import CancellationToken

LOGGER = logging.getLogger(__name__)

DiagnosticSeverity = Literal["error", "warning", "info", "hint"]

_LSP_SEVERITIES: dict[int, DiagnosticSeverity] = {1: "error", 2: "warning", 3: "info", 4: "hint"}


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """Host diagnostic with a 0-based range, as editors report them."""

    message: str
    severity: DiagnosticSeverity = "error"
    start_line: int = 0
    start_column: int = 0
    end_line: int | None = None
    end_column: int | None = None
    code: str | None = None
    source: str | None = None


class DiagnosticsSource(Protocol):
    """Anything that can report the current diagnostics for a file."""

    def get_diagnostics(self, path: str) -> list[Diagnostic]:
        ...


class StaticDiagnosticsSource:
    """In-memory diagnostics source fed by the host."""

    def __init__(self, diagnostics: Mapping[str, Iterable[Diagnostic]] | None = None) -> None:
        self._lock = threading.Lock()
        self._diagnostics: dict[str, list[Diagnostic]] = {
            _normalise(path): list(items) for path, items in (diagnostics or {}).items()
        }

    def get_diagnostics(self, path: str) -> list[Diagnostic]:
        with self._lock:
            return list(self._diagnostics.get(_normalise(path), ()))

    def update(self, path: str, diagnostics: Iterable[Diagnostic]) -> None:
        with self._lock:
            self._diagnostics[_normalise(path)] = list(diagnostics)

    def paths(self) -> list[str]:
        with self._lock:
            return list(self._diagnostics)


class JsonFileDiagnosticsSource:
    """Diagnostics read from a JSON document that another tool keeps current.

    The file is re-read on every query so a language server wrapper can
    rewrite it between fix attempts.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load(self) -> dict[str, list[Diagnostic]]:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as error:
            raise DiagnosticsPayloadError(f"Diagnostics file is not valid JSON: {error}") from error
        return parse_diagnostics_payload(data)

    def get_diagnostics(self, path: str) -> list[Diagnostic]:
        return self.load().get(_normalise(path), [])

    def paths(self) -> list[str]:
        return list(self.load())


# --------------------------------------------------------------------- payloads
class _PositionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    line: int = Field(ge=0)
    character: int = Field(default=0, ge=0)


class _RangePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    start: _PositionPayload
    end: Optional[_PositionPayload] = None


class DiagnosticPayload(BaseModel):
    """LSP-shaped diagnostic as received from a host."""

    model_config = ConfigDict(extra="ignore")

    message: str
    range: _RangePayload
    severity: DiagnosticSeverity = "error"
    code: Optional[Union[str, int]] = None
    source: Optional[str] = None

    @field_validator("severity", mode="before")
    @classmethod
    def _coerce_severity(cls, value: Any) -> Any:
        if isinstance(value, int):
            return _LSP_SEVERITIES.get(value, "info")
        if isinstance(value, str):
            lowered = value.lower()
            return "info" if lowered == "information" else lowered
        return value

    def to_diagnostic(self) -> Diagnostic:
        end = self.range.end
        return Diagnostic(
            message=self.message,
            severity=self.severity,
            start_line=self.range.start.line,
            start_column=self.range.start.character,
            end_line=end.line if end is not None else None,
            end_column=end.character if end is not None else None,
            code=str(self.code) if self.code is not None else None,
            source=self.source,
        )


class DiagnosticsPayloadError(AutofixError):
    """Raised when a host diagnostics document does not validate."""


def parse_diagnostics_payload(data: Any) -> dict[str, list[Diagnostic]]:
    """Validate ``{path: [diagnostic, ...]}`` or ``[{path, diagnostics}]`` documents."""
    if isinstance(data, list):
        mapping: dict[str, Any] = {}
        for entry in data:
            if not isinstance(entry, Mapping) or "path" not in entry:
                raise DiagnosticsPayloadError("Each diagnostics entry needs a 'path' key.")
            mapping.setdefault(str(entry["path"]), []).extend(entry.get("diagnostics") or [])
        data = mapping
    if not isinstance(data, Mapping):
        raise DiagnosticsPayloadError("Diagnostics payload must be a mapping of path to diagnostics.")

    parsed: dict[str, list[Diagnostic]] = {}
    for path, items in data.items():
        if not isinstance(items, list):
            raise DiagnosticsPayloadError(f"Diagnostics for {path} must be a list.")
        try:
            parsed[_normalise(str(path))] = [DiagnosticPayload.model_validate(item).to_diagnostic() for item in items]
        except ValidationError as error:
            raise DiagnosticsPayloadError(f"Invalid diagnostic for {path}: {error}") from error
    return parsed


# ------------------------------------------------------------------ conversion
def _normalise(path: str) -> str:
    return path.replace("\\", "/")


def infer_kind(diagnostic: Diagnostic) -> tuple[ErrorKind, str | None]:
    """Return the error kind (and framework tag) implied by a diagnostic."""
    source = (diagnostic.source or "").lower()
    message = diagnostic.message.lower()
    code = (diagnostic.code or "").lower()

    if source == "ts" or code.startswith("ts") or "typescript" in source:
        return ErrorKind.TYPE_ERROR, None
    if source in {"pyright", "pylance", "mypy"}:
        if "could not be resolved" in message and "import" in message:
            return ErrorKind.MISSING_MODULE, None
        return ErrorKind.TYPE_ERROR, None
    if "eslint" in source or source in {"ruff", "flake8", "pylint", "pyflakes"}:
        return ErrorKind.LINT, None
    if "prettier" in source or source == "black":
        return ErrorKind.STYLE, None
    if "react" in message or "jsx" in message or "hook" in message:
        return ErrorKind.FRAMEWORK, "react"
    if source in {"vetur", "volar"} or "vue" in source:
        return ErrorKind.FRAMEWORK, "vue"
    if source in {"css", "scss", "less"} or "tailwind" in source:
        return ErrorKind.STYLE, None
    if source == "dart" or "flutter" in source:
        return ErrorKind.FRAMEWORK, "flutter"
    if source == "swift" or "sourcekit" in source:
        return ErrorKind.BUILD, "ios"
    if "kotlin" in source:
        return ErrorKind.BUILD, "android"
    if source in {"jest", "pytest"} or "test" in message:
        return ErrorKind.TEST, None
    if "cannot find module" in message or "module not found" in message or "no module named" in message:
        return ErrorKind.MISSING_MODULE, None
    if "syntax" in message or "unexpected token" in message:
        return ErrorKind.SYNTAX, None
    return ErrorKind.UNKNOWN, None


def _error_severity(severity: DiagnosticSeverity) -> Severity:
    return "info" if severity == "hint" else severity


def diagnostic_to_error(diagnostic: Diagnostic, path: str) -> ParsedError:
    """Map a host diagnostic onto a 1-based :class:`ParsedError`."""
    kind, framework = infer_kind(diagnostic)
    return ParsedError(
        kind=kind,
        message=diagnostic.message,
        severity=_error_severity(diagnostic.severity),
        file=_normalise(path),
        line=diagnostic.start_line + 1,
        column=diagnostic.start_column + 1,
        end_line=diagnostic.end_line + 1 if diagnostic.end_line is not None else None,
        end_column=diagnostic.end_column + 1 if diagnostic.end_column is not None else None,
        code=diagnostic.code,
        framework=framework,
        source=diagnostic.source,
        raw_text=diagnostic.message,
    )


def select_errors(
    diagnostics: Iterable[Diagnostic],
    path: str,
    config: DiagnosticsSettings | None = None,
) -> list[ParsedError]:
    """Convert the diagnostics that pass the severity and rule filters in ``config``."""
    config = config or DiagnosticsSettings()
    allowed = set(config.severity_filter)
    ignored_rules = set(config.ignored_rules)
    return [
        diagnostic_to_error(diagnostic, path)
        for diagnostic in diagnostics
        if diagnostic.severity in allowed and (diagnostic.code or "") not in ignored_rules
    ]


# ----------------------------------------------------------------------- queue
class _Timer(Protocol):
    def start(self) -> None:
        ...

    def cancel(self) -> None:
        ...


TimerFactory = Callable[..., _Timer]


class DiagnosticsQueue:
    """Debounced, de-duplicated per-file queue in front of a :class:`FixEngine`."""

    def __init__(
        self,
        engine: "FixEngine",
        source: DiagnosticsSource,
        config: DiagnosticsSettings | None = None,
        *,
        timer_factory: TimerFactory = threading.Timer,
        cancel: "CancellationToken | None" = None,
    ) -> None:
        self.engine = engine
        self.source = source
        self.config = config or DiagnosticsSettings()
        self._timer_factory = timer_factory
        self._cancel = cancel
        self._lock = threading.Lock()
        self._latest: dict[str, list[ParsedError]] = {}
        self._queued: "OrderedDict[str, list[ParsedError]]" = OrderedDict()
        self._timers: dict[str, _Timer] = {}
        self._generations: dict[str, int] = {}
        self._ready: Deque[str] = deque()
        self._draining = False
        self._disposed = False
        self.results: list["FixBatchResult"] = []

    # --------------------------------------------------------------- settings
    @property
    def auto_fix_on_save(self) -> bool:
        return self.config.auto_fix_on_save

    def set_auto_fix_on_save(self, enabled: bool) -> None:
        self.config = self.config.model_copy(update={"auto_fix_on_save": enabled})
        if not enabled:
            with self._lock:
                timers = list(self._timers.values())
                self._timers.clear()
            for timer in timers:
                timer.cancel()

    def is_ignored(self, path: str) -> bool:
        normalised = _normalise(path)
        segments = set(normalised.split("/"))
        for ignored in self.config.ignored_files:
            if ignored in segments or ("/" in ignored and ignored in normalised):
                return True
        return False

    # ----------------------------------------------------------- host events
    def on_diagnostics_changed(self, paths: Iterable[str]) -> None:
        """Re-read diagnostics for ``paths`` and enqueue newly present errors."""
        for raw_path in paths:
            path = _normalise(raw_path)
            if self.is_ignored(path):
                continue
            errors = self._current_errors(path)
            with self._lock:
                if self._disposed:
                    return
                self._latest[path] = errors
                if not self.config.auto_fix_enabled or not errors:
                    continue
                queued = self._queued.get(path, [])
                known = {error.identity for error in queued}
                fresh = [error for error in errors if error.identity not in known]
                if fresh:
                    self._queued[path] = [*queued, *fresh]
                    LOGGER.debug("Queued %d new diagnostic(s) for %s", len(fresh), path)

    def on_document_saved(self, raw_path: str) -> None:
        """Start (or restart) the debounce timer for ``raw_path``."""
        path = _normalise(raw_path)
        if not self.config.auto_fix_enabled or not self.config.auto_fix_on_save or self.is_ignored(path):
            return
        with self._lock:
            if self._disposed:
                return
            generation = self._generations.get(path, 0) + 1
            self._generations[path] = generation
            previous = self._timers.pop(path, None)
            timer = self._timer_factory(self.config.debounce_seconds, self._on_timer, args=(path, generation))
            if hasattr(timer, "daemon"):
                timer.daemon = True
            self._timers[path] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def _on_timer(self, path: str, generation: int) -> None:
        with self._lock:
            if self._disposed or self._generations.get(path) != generation:
                return
            self._timers.pop(path, None)
            if path not in self._ready:
                self._ready.append(path)
        self._pump()

    # --------------------------------------------------------------- draining
    def drain(self) -> list["FixBatchResult"]:
        """Process every queued file now, in FIFO order, and return the results."""
        with self._lock:
            for path in self._queued:
                if path not in self._ready:
                    self._ready.append(path)
            start = len(self.results)
        self._pump()
        return self.results[start:]

    def _pump(self) -> None:
        with self._lock:
            if self._draining:
                return
            self._draining = True
        while True:
            with self._lock:
                if not self._ready or self._disposed:
                    self._draining = False
                    return
                path = self._ready.popleft()
                errors = self._queued.pop(path, [])
            if not errors:
                continue
            try:
                self._fix_file(path, errors)
            except BaseException:
                with self._lock:
                    self._draining = False
                raise

    def _fix_file(self, path: str, errors: list[ParsedError]) -> None:
        LOGGER.info("Auto-fixing %d diagnostic(s) in %s", len(errors), path)
        result = self.engine.fix_errors(
            errors,
            self.engine.diagnostics_verifier(path, self.source, self.config),
            origin=diagnostic_origin(errors),
            cancel=self._cancel,
        )
        errors = self._current_errors(path)
        with self._lock:
            self.results.append(result)
            self._latest[path] = errors

    # ---------------------------------------------------------------- queries
    def _current_errors(self, path: str) -> list[ParsedError]:
        return select_errors(self.source.get_diagnostics(path), path, self.config)

    def file_errors(self, path: str) -> list[ParsedError]:
        with self._lock:
            return list(self._latest.get(_normalise(path), ()))

    def queued_errors(self, path: str) -> list[ParsedError]:
        with self._lock:
            return list(self._queued.get(_normalise(path), ()))

    @property
    def pending_files(self) -> list[str]:
        with self._lock:
            return list(self._queued)

    def error_summary(self) -> dict[str, Any]:
        with self._lock:
            by_file = {path: len(errors) for path, errors in self._latest.items() if errors}
            kinds = Counter(error.kind.value for errors in self._latest.values() for error in errors)
        return {"total": sum(by_file.values()), "by_kind": dict(kinds), "by_file": by_file}

    def dispose(self) -> None:
        with self._lock:
            self._disposed = True
            timers = list(self._timers.values())
            self._timers.clear()
            self._ready.clear()
            self._queued.clear()
        for timer in timers:
            timer.cancel()


def diagnostic_origin(errors: Iterable[ParsedError]) -> str | None:
    """Describe where a batch of diagnostic errors came from, for the prompt."""
    for error in errors:
        if error.source:
            return f"{error.source} (IDE diagnostic)"
    return None


__all__ = [
    "Diagnostic",
    "DiagnosticPayload",
    "DiagnosticSeverity",
    "DiagnosticsPayloadError",
    "DiagnosticsQueue",
    "DiagnosticsSource",
    "JsonFileDiagnosticsSource",
    "StaticDiagnosticsSource",
    "diagnostic_origin",
    "diagnostic_to_error",
    "infer_kind",
    "parse_diagnostics_payload",
    "select_errors",
]
