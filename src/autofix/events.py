"""Typed status events emitted by the fix engine and drained by the host."""

from __future__ import annotations

import queue
from dataclasses import dataclass, field
from typing import Any, Iterator, Literal

FixPhase = Literal[
    "start",
    "attempt",
    "model",
    "applied",
    "approval-required",
    "fixed",
    "still-failing",
    "unparseable",
    "exhausted",
    "skipped-duplicate",
    "classification-miss",
    "cancelled",
    "error",
    "complete",
]


@dataclass(slots=True)
class FixEvent:
    """Single progress notification."""

    phase: FixPhase
    detail: str
    file: str | None = None
    success: bool | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "detail": self.detail,
            "file": self.file,
            "success": self.success,
            "data": dict(self.data),
        }


class EventChannel:
    """Unbounded, thread-safe event queue.

    Producers call :meth:`emit` from any thread; the host drains with
    :meth:`drain` (non-blocking) or iterates :meth:`stream` until a ``None``
    sentinel is posted via :meth:`close`.
    """

    def __init__(self) -> None:
        self._queue: "queue.Queue[FixEvent | None]" = queue.Queue()
        self._closed = False

    def emit(
        self,
        phase: FixPhase,
        detail: str,
        *,
        file: str | None = None,
        success: bool | None = None,
        **data: Any,
    ) -> FixEvent:
        event = FixEvent(phase=phase, detail=detail, file=file, success=success, data=data)
        if not self._closed:
            self._queue.put(event)
        return event

    def drain(self) -> list[FixEvent]:
        events: list[FixEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is not None:
                events.append(item)
        return events

    def stream(self, timeout: float | None = None) -> Iterator[FixEvent]:
        while True:
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                return
            if item is None:
                return
            yield item

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put(None)


__all__ = ["EventChannel", "FixEvent", "FixPhase"]
