"""Production client that speaks the OpenAI Responses API."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

from .llm_client import LLMClient, LLMResponseFormatError, LLMTransportError

__all__ = ["ResponsesClient", "iter_sse_deltas"]

LOGGER = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], str]
StreamTransport = Callable[[Dict[str, Any]], Iterable[str]]

_DELTA_EVENTS = {"response.output_text.delta"}
_TERMINAL_EVENTS = {"response.completed", "response.done"}
_FAILURE_EVENTS = {"error", "response.failed", "response.incomplete"}


def iter_sse_deltas(lines: Iterable[str]) -> Iterator[str]:
    """Turn raw server-sent-event lines into text deltas."""
    for raw_line in lines:
        line = raw_line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if not data:
            continue
        if data == "[DONE]":
            return
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            LOGGER.debug("Skipping malformed stream event: %s", data[:120])
            continue
        if not isinstance(event, dict):
            continue
        event_type = event.get("type")
        if event_type in _DELTA_EVENTS:
            delta = event.get("delta")
            if isinstance(delta, str) and delta:
                yield delta
        elif event_type in _TERMINAL_EVENTS:
            return
        elif event_type in _FAILURE_EVENTS:
            error = event.get("error") or (event.get("response") or {}).get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise LLMTransportError(f"Model stream failed: {message or event_type}")


class ResponsesClient(LLMClient):
    """Thin adapter around the Responses API with optional streaming."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1/responses",
        model: str = "gpt-5",
        transport: Optional[Transport] = None,
        stream_transport: Optional[StreamTransport] = None,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._api_key = api_key or os.getenv("AUTOFIX_API_KEY") or os.getenv("OPENAI_API_KEY")
        self._base_url = base_url
        timeout_override = os.getenv("AUTOFIX_MODEL_TIMEOUT")
        if timeout_override:
            try:
                parsed = float(timeout_override)
                if parsed > 0:
                    timeout = parsed
            except ValueError:
                pass
        self._timeout = timeout
        self._transport = transport or self._http_transport
        if stream_transport is not None:
            self._stream_transport: Optional[StreamTransport] = stream_transport
        elif transport is None:
            self._stream_transport = self._http_stream_transport
        else:
            self._stream_transport = None

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Send the request over the configured transport."""
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except (OSError, ValueError) as error:
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        normalised = self._extract_text(raw_response)
        if normalised is None:
            raise LLMResponseFormatError("Model response did not contain output text.")
        return normalised

    def _raw_stream(self, payload: Dict[str, Any]) -> Iterable[str]:
        if self._stream_transport is None:
            yield from super()._raw_stream(payload)
            return
        try:
            lines = self._stream_transport(payload)
            yield from iter_sse_deltas(lines)
        except LLMTransportError:
            raise
        except OSError as error:
            raise LLMTransportError(f"Stream interrupted: {error}") from error

    def _request(self, payload: Dict[str, Any]):
        import urllib.request

        LOGGER.debug("Model request payload: %s", json.dumps(payload, sort_keys=True)[:2000])
        data = json.dumps(payload).encode("utf-8")
        return urllib.request.Request(
            self._base_url,
            data=data,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
                "X-OpenAI-Client": "autofix/0.1",
            },
            method="POST",
        )

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport that targets the Responses API."""
        import urllib.error
        import urllib.request

        request = self._request(payload)
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Model response timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach model endpoint: {error.reason}") from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}")

        return raw.decode("utf-8")

    def _http_stream_transport(self, payload: Dict[str, Any]) -> Iterator[str]:  # pragma: no cover - network-dependent
        """Stream SSE lines from the Responses API."""
        import urllib.error
        import urllib.request

        request = self._request(payload)
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                for raw_line in response:
                    yield raw_line.decode("utf-8", errors="replace")
        except TimeoutError as error:
            raise LLMTransportError("Model stream timed out.") from error
        except urllib.error.HTTPError as error:
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:
            raise LLMTransportError(f"Failed to reach model endpoint: {error.reason}") from error

    def _extract_text(self, raw_response: str) -> Optional[str]:
        """Extract the text content returned by the Responses API."""
        if not raw_response:
            return None

        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return raw_response

        if isinstance(data, dict):
            output_text = data.get("output_text")
            if isinstance(output_text, str) and output_text.strip():
                return output_text

            output_events = data.get("output") or data.get("outputs")
            text_payload = self._joined_text_content(output_events)
            if text_payload:
                return text_payload

            response_container = data.get("response")
            if isinstance(response_container, dict):
                text_payload = self._joined_text_content(
                    response_container.get("output") or response_container.get("outputs")
                )
                if text_payload:
                    return text_payload

            candidate = data.get("content") or data.get("choices")
            text_payload = self._joined_text_content(candidate)
            if text_payload:
                return text_payload
            return None

        return raw_response

    @staticmethod
    def _joined_text_content(container: Any) -> Optional[str]:
        """Concatenate the text parts found within a responses container."""
        if not container:
            return None

        if isinstance(container, dict):
            container = [container]

        parts: list[str] = []
        for item in container:
            if not isinstance(item, dict):
                continue

            contents = item.get("content")
            if isinstance(contents, list):
                for content_item in contents:
                    if isinstance(content_item, dict):
                        text = content_item.get("text")
                        if isinstance(text, str) and text:
                            parts.append(text)
                continue

            text_value = item.get("text")
            if isinstance(text_value, str) and text_value:
                parts.append(text_value)
                continue

            message = item.get("message") if isinstance(item.get("message"), dict) else None
            if message:
                text = message.get("content") or message.get("text")
                if isinstance(text, str) and text:
                    parts.append(text)

        joined = "".join(parts)
        return joined if joined.strip() else None
