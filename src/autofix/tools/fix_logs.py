"""Write and load structured logs for individual fix attempts."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

__all__ = ["FixLogEntry", "load_fix_log", "write_fix_log"]

LOGGER = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^A-Za-z0-9]+")


def _slug(value: str, *, fallback: str = "item", limit: int = 40) -> str:
    slug = _SLUG_RE.sub("-", value).strip("-").lower()
    return (slug or fallback)[:limit]


def _json_safe(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in value]
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def write_fix_log(logs_root: Path, attempt: Mapping[str, Any]) -> Path | None:
    """Persist ``attempt`` under ``logs_root/fixes`` and return the file path.

    Logging is best effort: an unwritable log directory never fails the fix
    loop, the attempt is simply not recorded.
    """
    fixes_root = logs_root / "fixes"
    try:
        fixes_root.mkdir(parents=True, exist_ok=True)
    except OSError:
        LOGGER.debug("Unable to create fix log directory %s", fixes_root, exc_info=True)
        return None

    entry = dict(_json_safe(attempt))
    entry.setdefault("timestamp", datetime.now(timezone.utc).isoformat())

    target = entry.get("target_error") or {}
    parts = ["fix", _slug(str(entry.get("outcome") or "pending"))]
    if isinstance(target, Mapping) and target.get("file"):
        parts.append(_slug(str(target["file"])))
    parts.append(f"attempt{entry.get('attempt_number', 0)}")
    parts.append(datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ"))
    log_path = fixes_root / ("__".join(parts) + ".json")
    try:
        with log_path.open("w", encoding="utf-8") as handle:
            json.dump(entry, handle, indent=2, sort_keys=True, ensure_ascii=False)
    except OSError:
        LOGGER.debug("Unable to write fix log %s", log_path, exc_info=True)
        return None
    return log_path


@dataclass(slots=True)
class FixLogEntry:
    """In-memory representation of a stored fix attempt log."""

    path: Path
    outcome: str
    payload: Mapping[str, Any]

    @property
    def target_error(self) -> Mapping[str, Any]:
        value = self.payload.get("target_error")
        if isinstance(value, Mapping):
            return value
        return {}

    @property
    def attempt_number(self) -> int:
        value = self.payload.get("attempt_number")
        return value if isinstance(value, int) else 0

    @property
    def prompt(self) -> str:
        value = self.payload.get("prompt_sent")
        return value if isinstance(value, str) else ""

    @property
    def actions(self) -> list[Mapping[str, Any]]:
        value = self.payload.get("actions_applied")
        if isinstance(value, list):
            return [item for item in value if isinstance(item, Mapping)]
        return []


def load_fix_log(path: Path | str) -> FixLogEntry:
    """Load a structured fix attempt log from disk."""
    log_path = Path(path).resolve()
    with log_path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    outcome = str(payload.get("outcome") or "").strip()
    return FixLogEntry(path=log_path, outcome=outcome, payload=payload)
