"""YAML configuration for the fix engine, validated with pydantic."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .exceptions import AutofixError

DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_IGNORED_FILES = ["node_modules", ".git", "dist", "build", ".next", "__pycache__", ".venv"]

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "repo_root": ".",
    },
    "engine": {
        "max_retries": 3,
        "retry_ceiling": 3,
        "context_radius": 15,
        "max_related_errors": 3,
        "verify_settle_seconds": 0.5,
        "write_attempt_logs": True,
    },
    "executor": {
        "command_timeout": 300,
        "max_output_bytes": 10 * 1024 * 1024,
    },
    "diagnostics": {
        "auto_fix_enabled": True,
        "auto_fix_on_save": True,
        "debounce_seconds": 1.5,
        "severity_filter": ["error"],
        "ignored_files": list(DEFAULT_IGNORED_FILES),
        "ignored_rules": [],
    },
    "models": {
        "default": "gpt-5-mini",
        "timeout": 120,
        "max_attempts": 3,
        "retry_delay": 0.5,
    },
    "paths": {
        "logs": ".autofix/logs",
        "config": DEFAULT_CONFIG_NAME,
    },
}


class ConfigError(AutofixError):
    """Raised when the configuration file is missing, malformed or invalid."""


class SettingsModel(BaseModel):
    """Base settings model rejecting unknown keys."""

    model_config = ConfigDict(extra="forbid")


class ProjectSettings(SettingsModel):
    name: str = ""
    repo_root: str = "."


class EngineSettings(SettingsModel):
    max_retries: int = Field(default=3, ge=1)
    retry_ceiling: int = Field(default=3, ge=1)
    context_radius: int = Field(default=15, ge=0)
    max_related_errors: int = Field(default=3, ge=0)
    verify_settle_seconds: float = Field(default=0.5, ge=0)
    write_attempt_logs: bool = True

    @property
    def attempt_bound(self) -> int:
        return min(self.max_retries, self.retry_ceiling)


class ExecutorSettings(SettingsModel):
    command_timeout: float = Field(default=300.0, gt=0)
    max_output_bytes: int = Field(default=10 * 1024 * 1024, gt=0)


class DiagnosticsSettings(SettingsModel):
    auto_fix_enabled: bool = True
    auto_fix_on_save: bool = True
    debounce_seconds: float = Field(default=1.5, ge=0)
    severity_filter: List[str] = Field(default_factory=lambda: ["error"])
    ignored_files: List[str] = Field(default_factory=lambda: list(DEFAULT_IGNORED_FILES))
    ignored_rules: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_severities(self) -> "DiagnosticsSettings":
        allowed = {"error", "warning", "info", "hint"}
        unknown = sorted(set(self.severity_filter) - allowed)
        if unknown:
            raise ValueError(f"Unknown severities in severity_filter: {', '.join(unknown)}")
        return self


class ModelSettings(SettingsModel):
    default: str = "gpt-5-mini"
    timeout: float = Field(default=120.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=0.5, ge=0)
    base_url: Optional[str] = None
    api_key: Optional[str] = None

    @property
    def offline(self) -> bool:
        key = self.default.lower()
        return key == "offline" or key.endswith("-offline")


class PathSettings(SettingsModel):
    logs: str = ".autofix/logs"
    config: str = DEFAULT_CONFIG_NAME


class AutofixConfig(SettingsModel):
    """Top-level configuration document."""

    project: ProjectSettings = Field(default_factory=ProjectSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    diagnostics: DiagnosticsSettings = Field(default_factory=DiagnosticsSettings)
    models: ModelSettings = Field(default_factory=ModelSettings)
    paths: PathSettings = Field(default_factory=PathSettings)

    def repo_root(self, config_path: Path | None = None) -> Path:
        """Resolve ``project.repo_root`` relative to the config file."""
        root = Path(self.project.repo_root)
        if not root.is_absolute():
            base = config_path.parent if config_path is not None else Path.cwd()
            root = base / root
        return root.resolve()

    def logs_dir(self, repo_root: Path) -> Path:
        logs = Path(self.paths.logs)
        return logs if logs.is_absolute() else repo_root / logs


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, config_data: Dict[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_data, handle, sort_keys=False)


def parse_config(data: Dict[str, Any]) -> AutofixConfig:
    try:
        return AutofixConfig.model_validate(data)
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration: {error}") from error


def load_config(config_path: Path) -> AutofixConfig:
    """Load YAML configuration from disk and validate it."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}", details={"path": str(config_path)})

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return parse_config(data)


def load_config_or_default(config_path: Path) -> AutofixConfig:
    """Return the parsed config, or defaults when ``config_path`` is absent."""
    if not config_path.exists():
        return AutofixConfig()
    return load_config(config_path)


__all__ = [
    "AutofixConfig",
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "DiagnosticsSettings",
    "EngineSettings",
    "ExecutorSettings",
    "ModelSettings",
    "PathSettings",
    "ProjectSettings",
    "copy_config_template",
    "load_config",
    "load_config_or_default",
    "parse_config",
    "write_config",
]
