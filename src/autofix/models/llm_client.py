"""Text-completion client base class shared by all language-model integrations."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Protocol, runtime_checkable

from ..utils.cancellation import CancellationToken, is_cancelled

__all__ = [
    "LLMCancelledError",
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "ModelCapability",
    "collect_stream",
]

LOGGER = logging.getLogger(__name__)


class LLMClientError(RuntimeError):
    """Base error raised for LLM client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMResponseFormatError(LLMClientError):
    """Raised when the model returns a payload without usable text."""


class LLMRetryError(LLMClientError):
    """Raised after exhausting retries due to repeated transport failures."""


class LLMCancelledError(LLMClientError):
    """Raised when a streamed completion is stopped by a cancellation token."""


@runtime_checkable
class ModelCapability(Protocol):
    """What the fix engine needs from a language model."""

    def complete(self, prompt: str, system_context: Optional[str] = None) -> str:
        ...

    def stream_complete(
        self,
        prompt: str,
        system_context: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Iterator[str]:
        ...


@dataclass(slots=True)
class LLMRequest:
    """Request payload sent to an LLM."""

    prompt: str
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    temperature: float = 0.0
    max_output_tokens: Optional[int] = None
    max_attempts: Optional[int] = None
    stream: bool = False

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render a transport-ready payload for the Responses API."""
        def _message(role: str, text: str) -> Dict[str, Any]:
            return {
                "role": role,
                "content": [
                    {
                        "type": "input_text",
                        "text": text,
                    }
                ],
            }

        messages: list[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append(_message("system", self.system_prompt))
        messages.append(_message("user", self.prompt))

        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "input": messages,
        }
        if self.stream:
            payload["stream"] = True
        if self.temperature not in (None, 0.0):
            payload["temperature"] = self.temperature
        if self.max_output_tokens:
            payload["max_output_tokens"] = self.max_output_tokens
        if self.metadata:
            max_metadata_len = 512
            serialised_metadata: Dict[str, Any] = {}
            for key, value in self.metadata.items():
                formatted: str
                if isinstance(value, str):
                    formatted = value
                else:
                    formatted = json.dumps(value, separators=(",", ":"), sort_keys=True)
                if len(formatted) > max_metadata_len:
                    formatted = f"{formatted[: max_metadata_len - 3]}..."
                serialised_metadata[key] = formatted
            payload["metadata"] = serialised_metadata
        return payload


class LLMClient:
    """High-level helper that adds retries and cancellation to a raw transport."""

    def __init__(
        self,
        model: str,
        *,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._model = model
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay
        self._sleep = sleep

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def complete(self, prompt: str, system_context: Optional[str] = None) -> str:
        """Return the full completion for ``prompt``."""
        request = LLMRequest(prompt=prompt, system_prompt=system_context)
        return self.invoke(request)

    def invoke(self, request: LLMRequest) -> str:
        attempts = request.max_attempts or self._max_attempts
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            payload = request.to_payload(self._model)
            try:
                text = self._raw_invoke(payload)
            except (LLMTransportError, LLMResponseFormatError) as error:
                last_error = error
                LOGGER.warning("Model call failed (attempt %d/%d): %s", attempt, attempts, error)
                if attempt >= attempts:
                    break
                self._sleep(self._retry_delay)
                continue
            if not text or not text.strip():
                last_error = LLMResponseFormatError("Model returned an empty response.")
                if attempt >= attempts:
                    break
                self._sleep(self._retry_delay)
                continue
            return text

        raise LLMRetryError(
            f"Failed to obtain a completion after {attempts} attempt(s) for model "
            f"{request.model or self._model}"
        ) from last_error

    def stream_complete(
        self,
        prompt: str,
        system_context: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Iterator[str]:
        """Yield completion chunks, checking ``cancel`` between chunks.

        Transport failures before the first chunk are retried like
        :meth:`invoke`; once text has been yielded a failure propagates.
        """
        request = LLMRequest(prompt=prompt, system_prompt=system_context, stream=True)
        attempts = request.max_attempts or self._max_attempts
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            if is_cancelled(cancel):
                raise LLMCancelledError(cancel.reason if cancel else "cancelled")
            payload = request.to_payload(self._model)
            yielded = False
            try:
                for chunk in self._raw_stream(payload):
                    if is_cancelled(cancel):
                        raise LLMCancelledError(cancel.reason if cancel else "cancelled")
                    if chunk:
                        yielded = True
                        yield chunk
                return
            except LLMTransportError as error:
                if yielded:
                    raise
                last_error = error
                LOGGER.warning("Model stream failed (attempt %d/%d): %s", attempt, attempts, error)
                if attempt >= attempts:
                    break
                self._sleep(self._retry_delay)

        raise LLMRetryError(
            f"Failed to open a completion stream after {attempts} attempt(s) for model {self._model}"
        ) from last_error

    def collect(
        self,
        prompt: str,
        system_context: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
    ) -> str:
        """Drain :meth:`stream_complete` into a single string."""
        return collect_stream(self.stream_complete(prompt, system_context, cancel), on_chunk)

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    def _raw_stream(self, payload: Dict[str, Any]) -> Iterable[str]:
        """Stream text deltas. Defaults to a single chunk from :meth:`_raw_invoke`."""
        payload = {key: value for key, value in payload.items() if key != "stream"}
        yield self._raw_invoke(payload)


def collect_stream(chunks: Iterable[str], on_chunk: Optional[Callable[[str], None]] = None) -> str:
    parts: list[str] = []
    for chunk in chunks:
        parts.append(chunk)
        if on_chunk is not None:
            on_chunk(chunk)
    return "".join(parts)
