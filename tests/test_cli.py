from __future__ import annotations

import json
import shlex
import sys
import textwrap
from pathlib import Path

import yaml
from typer.testing import CliRunner

from autofix.cli import app

PYTHON = shlex.quote(sys.executable)

runner = CliRunner()


def _invoke(*args: str):
    return runner.invoke(app, list(args), catch_exceptions=False)


def test_init_writes_config_once(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"

    result = _invoke("init", "--config", str(config_path), "--name", "demo")
    assert result.exit_code == 0, result.output
    assert "Created configuration" in result.output

    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert data["project"]["name"] == "demo"
    assert data["engine"]["max_retries"] == 3

    again = _invoke("init", "--config", str(config_path))
    assert again.exit_code == 1
    assert "--force" in again.output


def test_classify_reports_parsed_errors_as_json(tmp_path: Path) -> None:
    output = tmp_path / "tsc.log"
    output.write_text(
        "src/app.ts(12,5): error TS2322: Type 'string' is not assignable to type 'number'.\n",
        encoding="utf-8",
    )

    result = _invoke("classify", str(output), "--json")

    assert result.exit_code == 1
    payload = json.loads(result.output)
    assert payload["has_errors"] is True
    assert payload["classification_miss"] is False
    [error] = payload["errors"]
    assert (error["kind"], error["file"], error["line"], error["code"]) == ("type-error", "src/app.ts", 12, "TS2322")


def test_classify_clean_output(tmp_path: Path) -> None:
    output = tmp_path / "clean.log"
    output.write_text("All checks passed!\n", encoding="utf-8")

    result = _invoke("classify", str(output))

    assert result.exit_code == 0
    assert "No errors detected" in result.output


def test_check_command_verdicts() -> None:
    safe = _invoke("check-command", "npm test")
    assert safe.exit_code == 0
    assert safe.output.startswith("safe:")

    dangerous = _invoke("check-command", "rm -rf /tmp/cache")
    assert dangerous.exit_code == 1
    assert dangerous.output.startswith("requires approval:")


def test_project_info_detects_python_framework(tiny_project) -> None:
    result = _invoke("project-info", str(tiny_project.root))

    assert result.exit_code == 0
    info = json.loads(result.output)
    assert info["framework"] == "fastapi"
    assert "pytest" in info["features"]


def test_fix_file_with_offline_model_exhausts_and_logs(tiny_project) -> None:
    diagnostics = tiny_project.root / "diagnostics.json"
    diagnostics.write_text(
        json.dumps(
            {
                "src/tiny_app/calculator.py": [
                    {
                        "message": 'Operator "+" not supported for types "int" and "str"',
                        "severity": 1,
                        "source": "Pylance",
                        "range": {"start": {"line": 4, "character": 11}},
                    }
                ]
            }
        ),
        encoding="utf-8",
    )

    result = _invoke("fix-file", "--diagnostics", str(diagnostics), "--config", str(tiny_project.config_path))

    assert result.exit_code == 1
    assert "offline stub client" in result.output
    assert "[unparseable] [src/tiny_app/calculator.py]" in result.output
    assert "Fixed 0, 1 remaining" in result.output
    assert "- remaining: src/tiny_app/calculator.py:5:12" in result.output

    logs = sorted((tiny_project.root / ".autofix" / "logs" / "fixes").glob("*.json"))
    assert len(logs) == 2

    shown = _invoke("show-log", str(logs[0]))
    assert shown.exit_code == 0
    assert "Outcome: unparseable" in shown.output
    assert "Target: type-error" in shown.output


def test_fix_file_without_diagnostics(tiny_project) -> None:
    diagnostics = tiny_project.root / "diagnostics.json"
    diagnostics.write_text("{}", encoding="utf-8")

    result = _invoke("fix-file", "--diagnostics", str(diagnostics), "--config", str(tiny_project.config_path))

    assert result.exit_code == 0
    assert "No diagnostics to fix." in result.output


def test_run_clean_command(tiny_project) -> None:
    result = _invoke("run", "echo hello", "--config", str(tiny_project.config_path), "--no-use-remote")

    assert result.exit_code == 0, result.output
    assert "No errors detected" in result.output


def test_run_failing_command_reports_remaining_errors(tiny_project) -> None:
    command = f"{PYTHON} -c \"import sys; sys.exit('Error: boom')\""

    result = _invoke("run", command, "--config", str(tiny_project.config_path), "--no-use-remote")

    assert result.exit_code == 1
    assert "Found 1 error(s):" in result.output
    assert "Fixed 0, 1 remaining" in result.output


def test_apply_writes_files_and_holds_dangerous_commands(tiny_project) -> None:
    response = tiny_project.root / "response.md"
    response.write_text(
        textwrap.dedent(
            """
            Add a subtraction helper:

            ```python:src/tiny_app/ops.py
            def sub(left: int, right: int) -> int:
                return left - right
            ```

            ```bash
            mkdir generated
            ```
            """
        ).lstrip(),
        encoding="utf-8",
    )

    held = _invoke("apply", str(response), "--config", str(tiny_project.config_path), "--no-use-remote")

    assert held.exit_code == 0, held.output
    assert (tiny_project.root / "src" / "tiny_app" / "ops.py").exists()
    assert "- awaiting approval: run `mkdir generated`" in held.output
    assert not (tiny_project.root / "generated").exists()

    approved = _invoke(
        "apply", str(response), "--config", str(tiny_project.config_path), "--no-use-remote", "--approve-all"
    )

    assert approved.exit_code == 0, approved.output
    assert "approved: run `mkdir generated`" in approved.output
    assert (tiny_project.root / "generated").is_dir()


def test_apply_delete_needs_approval(tiny_project) -> None:
    response = tiny_project.root / "empty.md"
    response.write_text("Nothing to change.\n", encoding="utf-8")
    target = tiny_project.root / "src" / "tiny_app" / "calculator.py"
    args = ["apply", str(response), "--config", str(tiny_project.config_path), "--no-use-remote"]

    held = _invoke(*args, "--delete", "src/tiny_app/calculator.py")
    assert held.exit_code == 0, held.output
    assert "- awaiting approval: delete src/tiny_app/calculator.py" in held.output
    assert target.exists()

    escaped = _invoke(*args, "--delete", "../outside.txt")
    assert escaped.exit_code == 1
    assert "Refusing to delete" in escaped.output

    approved = _invoke(*args, "--delete", "src/tiny_app/calculator.py", "--approve-all")
    assert approved.exit_code == 0, approved.output
    assert "approved: delete src/tiny_app/calculator.py" in approved.output
    assert not target.exists()


def test_show_log_missing_file(tmp_path: Path) -> None:
    result = _invoke("show-log", str(tmp_path / "missing.json"))

    assert result.exit_code == 1
    assert "Unable to load fix log" in result.output


def test_module_entry_point(tiny_project) -> None:
    completed = tiny_project.run_cli("check-command", "pytest -q")

    assert completed.returncode == 0, completed.stderr
    assert completed.stdout.startswith("safe:")
