"""CLI commands for classifying failures and running the autonomous fix loop."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from .config import (
    DEFAULT_CONFIG_NAME,
    AutofixConfig,
    ConfigError,
    copy_config_template,
    load_config_or_default,
    write_config,
)
from .context_builder import detect_project_type
from .diagnostics import DiagnosticsPayloadError, DiagnosticsQueue, JsonFileDiagnosticsSource
from .engine import EngineState, FixBatchResult, FixEngine
from .events import EventChannel
from .models import LLMClient, LLMClientError, ResponsesClient
from .policy import classify_command
from .tools.actions import FileAction
from .tools.errors import analyze_output
from .tools.executor import ActionExecutor
from .tools.fix_logs import load_fix_log

APP_HELP = "Autonomous fix loop for build, lint, type and test failures."

app = typer.Typer(help=APP_HELP)

OFFLINE_RESPONSE = (
    "Offline mode: no model is configured, so no fix was proposed. "
    "Set models.default to a hosted model to enable automatic repairs."
)


class _OfflineLLMClient(LLMClient):
    """Local stub that never proposes actions, for demos and tests."""

    def __init__(self) -> None:
        super().__init__("offline", max_attempts=1)

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        return OFFLINE_RESPONSE


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine progress to stderr."),
) -> None:
    """Configure logging for every sub-command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load(config: str) -> tuple[AutofixConfig, Path]:
    config_path = Path(config)
    try:
        return load_config_or_default(config_path), config_path
    except ConfigError as error:
        typer.echo(f"Failed to load configuration: {error}")
        raise typer.Exit(code=1) from error


def _build_client(settings: AutofixConfig, *, use_remote: bool) -> LLMClient:
    """Select either the hosted Responses client or the offline stub."""
    models_cfg = settings.models
    if use_remote and not models_cfg.offline:
        typer.echo(f"Using hosted model ({models_cfg.default}).")
        client_kwargs: Dict[str, Any] = {
            "timeout": models_cfg.timeout,
            "max_attempts": models_cfg.max_attempts,
            "retry_delay": models_cfg.retry_delay,
        }
        if models_cfg.base_url and models_cfg.base_url.strip():
            client_kwargs["base_url"] = models_cfg.base_url.strip()
        if models_cfg.api_key and models_cfg.api_key.strip():
            client_kwargs["api_key"] = models_cfg.api_key.strip()
        try:
            return ResponsesClient(model=models_cfg.default, **client_kwargs)
        except ValueError as error:
            if "api key" in str(error).lower():
                typer.echo(
                    "No API key given. Set AUTOFIX_API_KEY or OPENAI_API_KEY, "
                    "or re-run with --no-use-remote to use the offline stub."
                )
            else:
                typer.echo(f"Failed to initialise model client: {error}")
            raise typer.Exit(code=1)
        except LLMClientError as error:
            typer.echo(f"Failed to initialise model client: {error}")
            raise typer.Exit(code=1)

    if use_remote and models_cfg.offline:
        typer.echo(f"Model '{models_cfg.default}' is offline-only; using offline stub client.")
    else:
        typer.echo("Using offline stub client.")
    return _OfflineLLMClient()


def _build_engine(settings: AutofixConfig, config_path: Path, *, use_remote: bool) -> FixEngine:
    repo_root = settings.repo_root(config_path)
    executor = ActionExecutor(
        repo_root,
        command_timeout=settings.executor.command_timeout,
        max_output_bytes=settings.executor.max_output_bytes,
    )
    return FixEngine(
        _build_client(settings, use_remote=use_remote),
        executor,
        settings=settings.engine,
        state=EngineState(),
        events=EventChannel(),
        logs_root=settings.logs_dir(repo_root),
    )


def _render_events(engine: FixEngine) -> None:
    for event in engine.events.drain():
        location = f" [{event.file}]" if event.file else ""
        typer.echo(f"[{event.phase}]{location} {event.detail}")


def _render_result(result: FixBatchResult) -> None:
    typer.echo(result.status_message)
    for error in result.remaining_errors:
        typer.echo(f"- remaining: {error.location()} {error.message}")
    for action in result.pending_approvals:
        typer.echo(f"- awaiting approval: {action.describe()}")


def _read_text_argument(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    path = Path(source)
    try:
        return path.read_text(encoding="utf-8")
    except OSError as error:
        typer.echo(f"Unable to read {path}: {error}")
        raise typer.Exit(code=1) from error


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    name: Optional[str] = typer.Option(None, "--name", help="Project name recorded in the config."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration."),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)

    config_data = copy_config_template()
    config_data["project"]["name"] = name or config_path.resolve().parent.name
    config_data["paths"]["config"] = config_path.name
    write_config(config_path, config_data)
    typer.echo(f"Created configuration at {config_path}.")


@app.command()
def classify(
    source: str = typer.Argument("-", help="File holding tool output, or '-' for stdin."),
    as_json: bool = typer.Option(False, "--json", help="Emit parsed errors as JSON."),
) -> None:
    """Classify build, lint or test output without fixing anything."""
    analysis = analyze_output(_read_text_argument(source))
    if as_json:
        payload = {
            "has_errors": analysis.has_errors,
            "classification_miss": analysis.classification_miss,
            "summary": analysis.summary,
            "errors": [error.to_dict() for error in analysis.errors],
        }
        typer.echo(json.dumps(payload, indent=2))
    else:
        typer.echo(analysis.summary)
    if analysis.has_errors:
        raise typer.Exit(code=1)


@app.command("check-command")
def check_command(command: str = typer.Argument(..., help="Shell command to assess.")) -> None:
    """Report whether a command would run without approval."""
    verdict = classify_command(command)
    label = "safe" if verdict.safe else "requires approval"
    typer.echo(f"{label}: {verdict.reason}")
    if not verdict.safe:
        raise typer.Exit(code=1)


@app.command()
def run(
    command: str = typer.Argument(..., help="Build, lint or test command to run."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Working directory relative to the project root."),
    use_remote: bool = typer.Option(
        True,
        "--use-remote/--no-use-remote",
        help="Call the hosted model instead of the offline stub (requires API key).",
    ),
) -> None:
    """Run a command and try to fix whatever errors it reports."""
    settings, config_path = _load(config)
    engine = _build_engine(settings, config_path, use_remote=use_remote)
    outcome = engine.run_with_autofix(command, cwd=cwd)
    _render_events(engine)
    typer.echo(outcome.analysis.summary)
    if outcome.fix is not None:
        _render_result(outcome.fix)
    if not outcome.success:
        raise typer.Exit(code=1)


@app.command()
def apply(
    response: str = typer.Argument("-", help="File holding a model response, or '-' for stdin."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
    approve_all: bool = typer.Option(False, "--approve-all", help="Approve deletions and dangerous commands."),
    delete: List[str] = typer.Option(
        [],
        "--delete",
        help="File to delete; held for approval unless --approve-all is given.",
    ),
    use_remote: bool = typer.Option(
        True,
        "--use-remote/--no-use-remote",
        help="Call the hosted model instead of the offline stub (requires API key).",
    ),
) -> None:
    """Apply the file blocks and commands in a model response."""
    settings, config_path = _load(config)
    engine = _build_engine(settings, config_path, use_remote=use_remote)
    summary = engine.process_response(_read_text_argument(response))
    pending = summary.pending_approvals
    for path in delete:
        try:
            relative = engine.executor.relative(path)
        except OSError as error:
            typer.echo(f"Refusing to delete {path}: {error}")
            raise typer.Exit(code=1) from error
        pending.append(FileAction(op="delete", path=relative))
    if approve_all:
        for action in pending:
            approved = engine.executor.approve(action)
            typer.echo(f"{'approved' if approved else 'failed'}: {action.describe()}")
        pending = [action for action in pending if action.state == "pending"]
    _render_events(engine)
    typer.echo(summary.status_message)
    for action in pending:
        typer.echo(f"- awaiting approval: {action.describe()}")
    if summary.report.failed or any(not fix.success for fix in summary.fixes):
        raise typer.Exit(code=1)


@app.command("fix-file")
def fix_file(
    paths: List[str] = typer.Argument(None, help="Files to fix; defaults to every file in the diagnostics."),
    diagnostics: str = typer.Option(..., "--diagnostics", "-d", help="JSON file of LSP-style diagnostics."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
    use_remote: bool = typer.Option(
        True,
        "--use-remote/--no-use-remote",
        help="Call the hosted model instead of the offline stub (requires API key).",
    ),
) -> None:
    """Fix editor diagnostics read from a JSON file, one file at a time."""
    settings, config_path = _load(config)
    source = JsonFileDiagnosticsSource(diagnostics)
    try:
        targets = list(paths or source.paths())
    except DiagnosticsPayloadError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    if not targets:
        typer.echo("No diagnostics to fix.")
        return

    engine = _build_engine(settings, config_path, use_remote=use_remote)
    queue = DiagnosticsQueue(engine, source, settings.diagnostics)
    try:
        queue.on_diagnostics_changed(targets)
        results = queue.drain()
    except DiagnosticsPayloadError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    finally:
        queue.dispose()

    _render_events(engine)
    if not results:
        typer.echo("No diagnostics matched the configured filters.")
        return
    combined = FixBatchResult()
    for result in results:
        combined.merge(result)
    _render_result(combined)
    if not combined.success:
        raise typer.Exit(code=1)


@app.command("project-info")
def project_info(
    root: str = typer.Argument(".", help="Project root to inspect."),
) -> None:
    """Print the detected framework and tooling features as JSON."""
    typer.echo(json.dumps(detect_project_type(Path(root)).to_dict(), indent=2))


@app.command("show-log")
def show_log(path: str = typer.Argument(..., help="Fix attempt log written by the engine.")) -> None:
    """Summarise a stored fix attempt log."""
    try:
        entry = load_fix_log(path)
    except (OSError, json.JSONDecodeError) as error:
        typer.echo(f"Unable to load fix log {path}: {error}")
        raise typer.Exit(code=1) from error
    target = entry.target_error
    typer.echo(f"Outcome: {entry.outcome or 'unknown'}")
    typer.echo(f"Attempt: {entry.attempt_number}")
    typer.echo(f"Target: {target.get('kind', '?')} {target.get('message', '')}")
    for action in entry.actions:
        typer.echo(f"- {action.get('kind', 'action')}: {action.get('path') or action.get('command')} [{action.get('state')}]")


if __name__ == "__main__":
    app()
