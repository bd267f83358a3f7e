from __future__ import annotations

import os
import subprocess
import sys
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence, Union

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from autofix.utils.cancellation import CancellationToken  # noqa: E402

Reply = Union[str, Exception, Callable[[str], str]]


@dataclass
class ScriptedModel:
    """Fake model that replays canned replies and records every prompt."""

    replies: Sequence[Reply] = ()
    default: str = "I could not determine a fix."
    prompts: list[str] = field(default_factory=list)
    on_call: Optional[Callable[[int], None]] = None

    def _next(self, prompt: str) -> str:
        self.prompts.append(prompt)
        index = len(self.prompts) - 1
        if self.on_call is not None:
            self.on_call(index)
        reply: Reply = self.replies[index] if index < len(self.replies) else self.default
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply

    def complete(self, prompt: str, system_context: Optional[str] = None) -> str:
        return self._next(prompt)

    def stream_complete(
        self,
        prompt: str,
        system_context: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Iterator[str]:
        text = self._next(prompt)
        midpoint = len(text) // 2
        yield text[:midpoint]
        yield text[midpoint:]


@pytest.fixture()
def scripted_model() -> Callable[..., ScriptedModel]:
    return ScriptedModel


@dataclass(slots=True)
class TinyProject:
    """Fixture payload representing the synthetic project under test."""

    root: Path
    config_path: Path

    def run_cli(self, *args: str) -> subprocess.CompletedProcess[str]:
        """Invoke ``python -m autofix.cli`` with the provided arguments."""

        env = os.environ.copy()
        pythonpath = str(SRC)
        if env.get("PYTHONPATH"):
            pythonpath = os.pathsep.join([pythonpath, env["PYTHONPATH"]])
        env["PYTHONPATH"] = pythonpath

        command = [sys.executable, "-m", "autofix.cli", *args]
        return subprocess.run(  # noqa: S603 - command constructed from known values
            command,
            cwd=self.root,
            env=env,
            capture_output=True,
            text=True,
            check=False,
        )


@pytest.fixture()
def tiny_project(tmp_path: Path) -> TinyProject:
    """Create a tiny Python project with an offline-model config for CLI tests."""

    project_root = tmp_path / "tiny-project"
    src_dir = project_root / "src" / "tiny_app"
    src_dir.mkdir(parents=True)
    (src_dir / "__init__.py").write_text("", encoding="utf-8")
    (src_dir / "calculator.py").write_text(
        textwrap.dedent(
            """
            from __future__ import annotations


            def add(left: int, right: int) -> int:
                return left + right
            """
        ).lstrip(),
        encoding="utf-8",
    )
    (project_root / "pyproject.toml").write_text(
        textwrap.dedent(
            """
            [project]
            name = "tiny-app"
            version = "0.0.1"
            dependencies = ["fastapi>=0.100"]

            [project.optional-dependencies]
            test = ["pytest"]
            """
        ).lstrip(),
        encoding="utf-8",
    )
    (project_root / "config.yaml").write_text(
        textwrap.dedent(
            """
            project:
              name: tiny-project
              repo_root: .
            engine:
              max_retries: 2
              verify_settle_seconds: 0
            executor:
              command_timeout: 30
            models:
              default: offline
            paths:
              logs: .autofix/logs
              config: config.yaml
            """
        ).lstrip(),
        encoding="utf-8",
    )
    return TinyProject(root=project_root, config_path=project_root / "config.yaml")
