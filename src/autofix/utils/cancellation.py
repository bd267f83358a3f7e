"""Cooperative cancellation shared by model calls and captured commands."""

from __future__ import annotations

import threading


class CancellationToken:
    """Thread-safe flag that long-running operations poll between steps.

    A token is created by the host (CLI command, IDE "stop" button) and handed
    to the engine. Cancelling never interrupts a step half way; the model
    stream observes it at its next chunk and the process poll loop, which
    waits on the token, wakes as soon as it is set.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled by user") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; return the flag."""
        return self._event.wait(timeout)


def is_cancelled(token: CancellationToken | None) -> bool:
    return token is not None and token.cancelled


__all__ = ["CancellationToken", "is_cancelled"]
