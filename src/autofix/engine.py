"""Bounded retry loop that asks a model to repair classified errors.

Each target error moves through ``queued -> fixing -> {fixed | exhausted |
skipped-duplicate}``. The engine owns an :class:`EngineState` holding the
attempt history (error identity -> model attempts) and the lock that makes it
the single active fix loop. History only grows; :meth:`FixEngine.reset` is the
one way to clear it.

Per identity the engine makes at most ``min(max_retries, retry_ceiling)``
model attempts over the lifetime of the state. The counter is incremented
before every model call, so an identity can never loop unboundedly, and a
batch is drained completely before the call returns.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Literal, Sequence

from .config import DiagnosticsSettings, EngineSettings
from .context_builder import ErrorContextBuilder, ProjectProfile, detect_project_type
from .diagnostics import Diagnostic, DiagnosticsSource, diagnostic_origin, diagnostic_to_error, select_errors
from .events import EventChannel
from .exceptions import CommandCancelledError, CommandTimeoutError, RetryCeilingReached
from .models.llm_client import LLMCancelledError, LLMClientError, ModelCapability
from .prompts import FIX_SYSTEM_PROMPT, build_fix_prompt
from .tools.actions import CommandAction, FileAction, parse_actions
from .tools.errors import (
    ErrorIdentity,
    OutputAnalysis,
    ParsedError,
    analyze_output,
    group_by_file,
    sort_by_priority,
)
from .tools.executor import ActionExecutor, ExecutionReport
from .tools.fix_logs import write_fix_log
from .utils.cancellation import CancellationToken, is_cancelled

LOGGER = logging.getLogger(__name__)

AttemptOutcome = Literal["fixed", "still-failing", "unparseable", "exhausted"]
TerminalState = Literal["fixed", "exhausted", "skipped-duplicate"]
Verifier = Callable[["CancellationToken | None"], OutputAnalysis]


@dataclass(slots=True)
class FixAttempt:
    """One model round-trip for one target error."""

    target_error: ParsedError
    attempt_number: int
    prompt_sent: str
    actions_applied: list[FileAction | CommandAction] = field(default_factory=list)
    outcome: AttemptOutcome = "still-failing"
    response_text: str = ""
    model_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_error": self.target_error.to_dict(),
            "attempt_number": self.attempt_number,
            "prompt_sent": self.prompt_sent,
            "response_text": self.response_text,
            "actions_applied": [action.to_dict() for action in self.actions_applied],
            "outcome": self.outcome,
            "model_error": self.model_error,
        }


@dataclass(slots=True)
class ErrorOutcome:
    """Terminal state reached by one target error within a batch."""

    error: ParsedError
    state: TerminalState
    attempts: int = 0
    detail: str = ""


@dataclass(slots=True)
class FixBatchResult:
    """Aggregate outcome of draining one or more error batches."""

    success: bool = True
    errors_fixed: int = 0
    errors_failed: int = 0
    attempts: int = 0
    fixed_errors: list[ParsedError] = field(default_factory=list)
    remaining_errors: list[ParsedError] = field(default_factory=list)
    pending_approvals: list[FileAction | CommandAction] = field(default_factory=list)
    outcomes: list[ErrorOutcome] = field(default_factory=list)
    records: list[FixAttempt] = field(default_factory=list)
    cancelled: bool = False

    @property
    def status_message(self) -> str:
        return f"Fixed {self.errors_fixed}, {len(self.remaining_errors)} remaining"

    def merge(self, other: "FixBatchResult") -> None:
        self.errors_fixed += other.errors_fixed
        self.errors_failed += other.errors_failed
        self.attempts += other.attempts
        self.fixed_errors.extend(other.fixed_errors)
        self.remaining_errors.extend(other.remaining_errors)
        self.pending_approvals.extend(other.pending_approvals)
        self.outcomes.extend(other.outcomes)
        self.records.extend(other.records)
        self.cancelled = self.cancelled or other.cancelled
        self.success = not self.remaining_errors

    def raise_for_remaining(self) -> None:
        """Raise :class:`RetryCeilingReached` when errors are left unfixed."""
        if self.remaining_errors:
            raise RetryCeilingReached(
                self.status_message,
                details={"remaining": [error.to_dict() for error in self.remaining_errors]},
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "errors_fixed": self.errors_fixed,
            "errors_failed": self.errors_failed,
            "attempts": self.attempts,
            "status": self.status_message,
            "fixed_errors": [error.to_dict() for error in self.fixed_errors],
            "remaining_errors": [error.to_dict() for error in self.remaining_errors],
            "pending_approvals": [action.to_dict() for action in self.pending_approvals],
            "cancelled": self.cancelled,
        }


@dataclass(slots=True)
class CommandFixResult:
    """Outcome of :meth:`FixEngine.run_with_autofix`."""

    command: str
    exit_code: int | None
    output: str
    analysis: OutputAnalysis
    fix: FixBatchResult | None = None

    @property
    def success(self) -> bool:
        if self.fix is not None:
            return self.fix.success
        return not self.analysis.has_errors


@dataclass(slots=True)
class ResponseSummary:
    """What applying a model response did to the workspace."""

    report: ExecutionReport
    fixes: list[FixBatchResult] = field(default_factory=list)

    @property
    def pending_approvals(self) -> list[FileAction | CommandAction]:
        pending = list(self.report.pending_approvals)
        for fix in self.fixes:
            pending.extend(fix.pending_approvals)
        return pending

    @property
    def status_message(self) -> str:
        parts = [
            f"{len(self.report.files)} file(s) written",
            f"{len(self.report.commands)} command(s) run",
        ]
        if self.report.failed:
            parts.append(f"{len(self.report.failed)} failed")
        if self.pending_approvals:
            parts.append(f"{len(self.pending_approvals)} awaiting approval")
        for fix in self.fixes:
            parts.append(fix.status_message)
        return ", ".join(parts)


class EngineState:
    """Attempt history plus the lock that makes one fix loop active at a time."""

    def __init__(self) -> None:
        self.attempt_history: dict[ErrorIdentity, int] = {}
        self._history_lock = threading.Lock()
        self.fix_lock = threading.Lock()

    @property
    def is_fixing(self) -> bool:
        return self.fix_lock.locked()

    def attempts_for(self, identity: ErrorIdentity) -> int:
        with self._history_lock:
            return self.attempt_history.get(identity, 0)

    def record_attempt(self, identity: ErrorIdentity) -> int:
        with self._history_lock:
            count = self.attempt_history.get(identity, 0) + 1
            self.attempt_history[identity] = count
            return count

    def reset(self) -> None:
        with self._history_lock:
            self.attempt_history.clear()


class _Cancelled(Exception):
    """Internal signal unwinding the loop after a cancellation."""


class FixEngine:
    """Drive the classify -> prompt -> apply -> verify loop."""

    def __init__(
        self,
        model: ModelCapability,
        executor: ActionExecutor,
        *,
        settings: EngineSettings | None = None,
        state: EngineState | None = None,
        events: EventChannel | None = None,
        context_builder: ErrorContextBuilder | None = None,
        profile: ProjectProfile | None = None,
        logs_root: Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.model = model
        self.executor = executor
        self.settings = settings or EngineSettings()
        self.state = state or EngineState()
        self.events = events or EventChannel()
        self.context_builder = context_builder or ErrorContextBuilder(
            executor.workspace_root,
            radius=self.settings.context_radius,
            read_file=self._read_for_context,
        )
        self._profile = profile
        self.logs_root = logs_root
        self._sleep = sleep

    # ----------------------------------------------------------------- state
    @property
    def attempt_bound(self) -> int:
        return self.settings.attempt_bound

    @property
    def is_fixing(self) -> bool:
        return self.state.is_fixing

    @property
    def profile(self) -> ProjectProfile:
        if self._profile is None:
            self._profile = detect_project_type(self.executor.workspace_root)
        return self._profile

    def reset(self) -> None:
        """Clear the attempt history so exhausted errors may be retried."""
        self.state.reset()
        self.context_builder.forget()
        self.events.emit("start", "Attempt history cleared")

    # ----------------------------------------------------------- entry points
    def fix_errors(
        self,
        errors: Sequence[ParsedError],
        verify: Verifier,
        *,
        output: str = "",
        origin: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> FixBatchResult:
        """Drain one batch of errors, verifying each attempt with ``verify``."""
        with self.state.fix_lock:
            result, _ = self._drain(errors, verify, output=output, origin=origin, cancel=cancel)
        self._announce(result)
        return result

    def fix_all_in_file(
        self,
        path: str,
        source: DiagnosticsSource,
        config: DiagnosticsSettings | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> FixBatchResult:
        errors = select_errors(source.get_diagnostics(path), path, config)
        return self.fix_errors(
            errors,
            self.diagnostics_verifier(path, source, config),
            origin=diagnostic_origin(errors),
            cancel=cancel,
        )

    def fix_single_diagnostic(
        self,
        path: str,
        diagnostic: Diagnostic,
        source: DiagnosticsSource,
        config: DiagnosticsSettings | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> bool:
        error = diagnostic_to_error(diagnostic, path)
        result = self.fix_errors(
            [error],
            self.diagnostics_verifier(path, source, config),
            origin=diagnostic_origin([error]),
            cancel=cancel,
        )
        return result.success

    def fix_command_output(
        self,
        command: str,
        errors: Sequence[ParsedError],
        *,
        output: str = "",
        cwd: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> FixBatchResult:
        """Fix errors produced by ``command`` file by file, re-running it to verify."""
        verify = self.command_verifier(command, cwd)
        combined = FixBatchResult()
        with self.state.fix_lock:
            present: set[ErrorIdentity] | None = None
            for file, group in group_by_file(sort_by_priority(errors)).items():
                if combined.cancelled:
                    self._abandon(group, combined, "cancelled before this file was processed")
                    continue
                if present is not None:
                    already = [error for error in group if error.identity not in present]
                    for error in already:
                        self._mark_fixed(combined, error, attempts=0, detail="fixed by an earlier change")
                    group = [error for error in group if error.identity in present]
                    if not group:
                        continue
                LOGGER.info("Fixing %d error(s) in %s", len(group), file or "(no file)")
                result, present = self._drain(group, verify, output=output, cancel=cancel)
                combined.merge(result)
        combined.success = not combined.remaining_errors
        self._announce(combined)
        return combined

    def run_with_autofix(
        self,
        command: str,
        *,
        cwd: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> CommandFixResult:
        """Run ``command`` once and, when it reports errors, try to fix them."""
        action = CommandAction(command=command, working_dir=cwd, is_dangerous=False)
        exit_code: int | None = None
        try:
            run = self.executor.run(action, cancel=cancel)
        except CommandCancelledError as exc:
            output = f"{exc.output}\n{exc}".strip()
            return CommandFixResult(command=command, exit_code=None, output=output, analysis=analyze_output(output))
        except CommandTimeoutError as exc:
            # Output captured before the kill is still classified.
            output = f"{exc.output}\n{exc}".strip()
        else:
            output = run.output if run is not None else ""
            exit_code = run.exit_code if run is not None else None

        analysis = analyze_output(output)
        outcome = CommandFixResult(command=command, exit_code=exit_code, output=output, analysis=analysis)
        if analysis.classification_miss:
            self.events.emit("classification-miss", analysis.summary, success=False, command=command)
            return outcome
        if not analysis.errors:
            return outcome
        outcome.fix = self.fix_command_output(command, analysis.errors, output=output, cwd=cwd, cancel=cancel)
        return outcome

    def process_response(
        self,
        response_text: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> ResponseSummary:
        """Apply a chat response and auto-fix any command it ran that failed."""
        files, commands = parse_actions(response_text, self.executor.workspace_root)
        report = self.executor.execute_batch(files, commands, cancel=cancel)
        summary = ResponseSummary(report=report)
        for action in [*report.commands, *report.timed_out]:
            if is_cancelled(cancel):
                break
            analysis = analyze_output(action.output)
            if analysis.classification_miss:
                self.events.emit("classification-miss", analysis.summary, success=False, command=action.command)
                continue
            if not analysis.errors:
                continue
            summary.fixes.append(
                self.fix_command_output(
                    action.command,
                    analysis.errors,
                    output=action.output,
                    cwd=action.working_dir,
                    cancel=cancel,
                )
            )
        return summary

    # --------------------------------------------------------------- verifiers
    def command_verifier(self, command: str, cwd: str | None = None) -> Verifier:
        def _verify(cancel: CancellationToken | None) -> OutputAnalysis:
            action = CommandAction(command=command, working_dir=cwd, is_dangerous=False)
            try:
                run = self.executor.run(action, cancel=cancel)
            except CommandTimeoutError as exc:
                return analyze_output(f"{exc.output}\n{exc}")
            return analyze_output(run.output if run is not None else "")

        return _verify

    def diagnostics_verifier(
        self,
        path: str,
        source: DiagnosticsSource,
        config: DiagnosticsSettings | None = None,
    ) -> Verifier:
        """Re-read ``source`` for ``path`` through the same filters that selected the errors."""

        def _verify(cancel: CancellationToken | None) -> OutputAnalysis:
            if self.settings.verify_settle_seconds:
                self._sleep(self.settings.verify_settle_seconds)
            errors = select_errors(source.get_diagnostics(path), path, config)
            summary = f"{len(errors)} diagnostic error(s) in {path}"
            return OutputAnalysis(has_errors=bool(errors), errors=errors, summary=summary)

        return _verify

    # -------------------------------------------------------------- internals
    def _drain(
        self,
        errors: Sequence[ParsedError],
        verify: Verifier,
        *,
        output: str = "",
        origin: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> tuple[FixBatchResult, set[ErrorIdentity] | None]:
        result = FixBatchResult()
        queue = sort_by_priority(_dedupe(errors))
        current = list(queue)
        present: set[ErrorIdentity] | None = None
        self.context_builder.remember(queue)
        if queue:
            self.events.emit("start", f"Fixing {len(queue)} error(s)", file=queue[0].file, count=len(queue))

        while queue:
            target = queue.pop(0)
            if is_cancelled(cancel) or result.cancelled:
                result.cancelled = True
                self._abandon([target, *queue], result, "cancelled")
                break

            if self.state.attempts_for(target.identity) >= self.attempt_bound:
                result.errors_failed += 1
                result.remaining_errors.append(target)
                result.outcomes.append(ErrorOutcome(target, "skipped-duplicate", 0, "retry ceiling already reached"))
                self.events.emit(
                    "skipped-duplicate",
                    f"Skipping {_short(target.message)}: retry ceiling already reached",
                    file=target.file,
                    success=False,
                )
                continue

            try:
                state, attempts, present_after = self._fix_target(
                    target, current, verify, result, output=output, origin=origin, cancel=cancel
                )
            except _Cancelled:
                result.cancelled = True
                self._abandon([target, *queue], result, "cancelled")
                break

            if present_after is not None:
                present = present_after
                for other in [error for error in queue if error.identity not in present_after]:
                    queue.remove(other)
                    self._mark_fixed(result, other, attempts=0, detail="fixed by a related change")
                current = [error for error in current if error.identity in present_after]

            if state == "fixed":
                self._mark_fixed(result, target, attempts=attempts)
            else:
                result.errors_failed += 1
                result.remaining_errors.append(target)
                result.outcomes.append(ErrorOutcome(target, "exhausted", attempts))
                self.events.emit(
                    "exhausted",
                    f"Giving up on {_short(target.message)} after {attempts} attempt(s)",
                    file=target.file,
                    success=False,
                )

        result.success = not result.remaining_errors
        return result, present

    def _fix_target(
        self,
        target: ParsedError,
        current: list[ParsedError],
        verify: Verifier,
        result: FixBatchResult,
        *,
        output: str,
        origin: str | None,
        cancel: CancellationToken | None,
    ) -> tuple[TerminalState, int, set[ErrorIdentity] | None]:
        attempts = 0
        present: set[ErrorIdentity] | None = None
        while self.state.attempts_for(target.identity) < self.attempt_bound:
            if is_cancelled(cancel):
                raise _Cancelled()
            number = self.state.record_attempt(target.identity)
            attempts += 1
            result.attempts += 1

            related = [
                error for error in current if error.identity != target.identity
            ][: self.settings.max_related_errors]
            context = self.context_builder.build(target, output=output, related=related)
            prompt = build_fix_prompt(target, context, profile=self.profile, origin=origin)
            attempt = FixAttempt(target_error=target, attempt_number=number, prompt_sent=prompt)
            result.records.append(attempt)
            self.events.emit(
                "attempt",
                f"Fixing {target.kind.value} error: {_short(target.message)} (attempt {number}/{self.attempt_bound})",
                file=target.file,
                attempt=number,
            )

            try:
                attempt.response_text = self._ask_model(prompt, cancel)
            except LLMCancelledError:
                attempt.outcome = "exhausted"
                attempt.model_error = "cancelled"
                self._log_attempt(attempt)
                raise _Cancelled() from None
            except LLMClientError as exc:
                attempt.model_error = str(exc)
                attempt.outcome = "still-failing"
                LOGGER.warning("Model call failed for %s: %s", target.location(), exc)
                self.events.emit("error", f"Model call failed: {exc}", file=target.file, success=False)
                self._log_attempt(attempt)
                continue

            files, commands = parse_actions(attempt.response_text, self.executor.workspace_root)
            if not files and not commands:
                attempt.outcome = "unparseable"
                self.events.emit("unparseable", "Model response contained no actions", file=target.file, success=False)
                self._log_attempt(attempt)
                continue

            report = self.executor.execute_batch(files, commands, cancel=cancel)
            attempt.actions_applied = [*report.executed, *report.failed]
            result.pending_approvals.extend(report.pending_approvals)
            self.events.emit(
                "applied",
                f"Applied {len(report.executed)} action(s), {len(report.failed)} failed",
                file=target.file,
                executed=len(report.executed),
                failed=len(report.failed),
            )
            for pending in report.pending_approvals:
                self.events.emit("approval-required", pending.describe(), file=target.file)
            if is_cancelled(cancel):
                attempt.outcome = "exhausted"
                self._log_attempt(attempt)
                raise _Cancelled()

            try:
                analysis = verify(cancel)
            except CommandCancelledError:
                attempt.outcome = "exhausted"
                self._log_attempt(attempt)
                raise _Cancelled() from None

            if analysis.classification_miss:
                attempt.outcome = "unparseable"
                self._log_attempt(attempt)
                self.events.emit("classification-miss", analysis.summary, file=target.file, success=False)
                return "exhausted", attempts, present

            present = {error.identity for error in analysis.errors}
            self.context_builder.remember(analysis.errors)
            if target.identity not in present:
                attempt.outcome = "fixed"
                self._log_attempt(attempt)
                return "fixed", attempts, present

            attempt.outcome = "still-failing"
            self._log_attempt(attempt)
            self.events.emit("still-failing", f"Still failing: {_short(target.message)}", file=target.file, success=False)
            current[:] = [error for error in current if error.identity in present]
            if not any(error.identity == target.identity for error in current):
                current.insert(0, target)

        return "exhausted", attempts, present

    def _ask_model(self, prompt: str, cancel: CancellationToken | None) -> str:
        self.events.emit("model", "Waiting for model response")
        chunks: list[str] = []
        for chunk in self.model.stream_complete(prompt, FIX_SYSTEM_PROMPT, cancel):
            if is_cancelled(cancel):
                raise LLMCancelledError(cancel.reason if cancel else "cancelled")
            chunks.append(chunk)
        if is_cancelled(cancel):
            raise LLMCancelledError(cancel.reason if cancel else "cancelled")
        return "".join(chunks)

    def _mark_fixed(self, result: FixBatchResult, error: ParsedError, *, attempts: int, detail: str = "") -> None:
        result.errors_fixed += 1
        result.fixed_errors.append(error)
        result.outcomes.append(ErrorOutcome(error, "fixed", attempts, detail))
        self.events.emit("fixed", f"Fixed: {_short(error.message)}", file=error.file, success=True)

    def _abandon(self, errors: Iterable[ParsedError], result: FixBatchResult, reason: str) -> None:
        result.cancelled = True
        for error in errors:
            result.errors_failed += 1
            result.remaining_errors.append(error)
            result.outcomes.append(ErrorOutcome(error, "exhausted", 0, reason))
        self.events.emit("cancelled", f"Stopped: {reason}", success=False)
        result.success = not result.remaining_errors

    def _announce(self, result: FixBatchResult) -> None:
        self.events.emit(
            "complete",
            result.status_message,
            success=result.success,
            fixed=result.errors_fixed,
            remaining=len(result.remaining_errors),
        )

    def _log_attempt(self, attempt: FixAttempt) -> None:
        if self.logs_root is None or not self.settings.write_attempt_logs:
            return
        write_fix_log(self.logs_root, attempt.to_dict())

    def _read_for_context(self, path: str) -> str | None:
        try:
            return self.executor.read_file(path)
        except OSError:
            return None


def _dedupe(errors: Iterable[ParsedError]) -> list[ParsedError]:
    seen: set[ErrorIdentity] = set()
    unique: list[ParsedError] = []
    for error in errors:
        if error.identity in seen:
            continue
        seen.add(error.identity)
        unique.append(error)
    return unique


def _short(message: str, limit: int = 60) -> str:
    return message if len(message) <= limit else f"{message[: limit - 3]}..."


__all__ = [
    "AttemptOutcome",
    "CommandFixResult",
    "EngineState",
    "ErrorOutcome",
    "FixAttempt",
    "FixBatchResult",
    "FixEngine",
    "ResponseSummary",
    "TerminalState",
    "Verifier",
]
