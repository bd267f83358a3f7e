from __future__ import annotations

import json
from typing import Any, Iterator

import pytest

from autofix.models import (
    LLMCancelledError,
    LLMRequest,
    LLMRetryError,
    LLMTransportError,
    ResponsesClient,
)
from autofix.models.responses import iter_sse_deltas
from autofix.utils.cancellation import CancellationToken


def _response_payload(text: str) -> str:
    return json.dumps(
        {
            "id": "resp_mock",
            "object": "response",
            "status": "completed",
            "output": [
                {
                    "id": "msg_mock",
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "output_text", "text": text}],
                }
            ],
        }
    )


def _sse(*deltas: str, terminal: str = "response.completed") -> list[str]:
    lines = [f"data: {json.dumps({'type': 'response.output_text.delta', 'delta': delta})}\n" for delta in deltas]
    lines.append(f"data: {json.dumps({'type': terminal})}\n")
    return lines


def test_complete_extracts_text_from_responses_payload() -> None:
    seen: list[dict[str, Any]] = []

    def transport(payload: dict[str, Any]) -> str:
        seen.append(payload)
        return _response_payload("```python:app.py\nx = 1\n```")

    client = ResponsesClient(model="gpt-5-mini", transport=transport, retry_delay=0)

    text = client.complete("fix it", "be terse")

    assert text.startswith("```python:app.py")
    [payload] = seen
    assert payload["model"] == "gpt-5-mini"
    assert [message["role"] for message in payload["input"]] == ["system", "user"]
    assert payload["input"][1]["content"][0]["text"] == "fix it"
    assert "stream" not in payload


def test_request_payload_serialises_metadata() -> None:
    request = LLMRequest(prompt="hi", metadata={"target": {"file": "a.py", "line": 3}, "note": "x" * 600})

    payload = request.to_payload("gpt-5")

    assert payload["metadata"]["target"] == '{"file":"a.py","line":3}'
    assert len(payload["metadata"]["note"]) == 512
    assert payload["metadata"]["note"].endswith("...")


def test_transport_failures_are_retried() -> None:
    calls: list[int] = []

    def transport(_: dict[str, Any]) -> str:
        calls.append(1)
        if len(calls) < 3:
            raise LLMTransportError("connection reset")
        return _response_payload("done")

    client = ResponsesClient(model="gpt-5", transport=transport, max_attempts=3, retry_delay=0)

    assert client.complete("prompt") == "done"
    assert len(calls) == 3


def test_retry_error_after_exhausting_attempts() -> None:
    def transport(_: dict[str, Any]) -> str:
        raise OSError("network unreachable")

    client = ResponsesClient(model="gpt-5", transport=transport, max_attempts=2, retry_delay=0)

    with pytest.raises(LLMRetryError) as excinfo:
        client.complete("prompt")

    assert "2 attempt(s)" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, LLMTransportError)


def test_payload_without_text_is_retried_then_fails() -> None:
    def transport(_: dict[str, Any]) -> str:
        return json.dumps({"output": [{"type": "reasoning", "content": []}]})

    client = ResponsesClient(model="gpt-5", transport=transport, max_attempts=2, retry_delay=0)

    with pytest.raises(LLMRetryError):
        client.complete("prompt")


def test_default_transport_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AUTOFIX_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(ValueError):
        ResponsesClient(model="gpt-5")


def test_stream_complete_yields_sse_deltas() -> None:
    seen: list[dict[str, Any]] = []

    def stream_transport(payload: dict[str, Any]) -> list[str]:
        seen.append(payload)
        return _sse("Hel", "lo")

    client = ResponsesClient(
        model="gpt-5",
        transport=lambda _: _response_payload("unused"),
        stream_transport=stream_transport,
        retry_delay=0,
    )

    assert list(client.stream_complete("prompt")) == ["Hel", "lo"]
    assert seen[0]["stream"] is True


def test_stream_falls_back_to_single_chunk_without_stream_transport() -> None:
    client = ResponsesClient(model="gpt-5", transport=lambda _: _response_payload("whole reply"), retry_delay=0)

    assert list(client.stream_complete("prompt")) == ["whole reply"]


def test_stream_stops_when_cancelled_between_chunks() -> None:
    token = CancellationToken()
    client = ResponsesClient(
        model="gpt-5",
        transport=lambda _: _response_payload("unused"),
        stream_transport=lambda _: _sse("Hel", "lo", " world"),
        retry_delay=0,
    )
    received: list[str] = []

    def on_chunk(chunk: str) -> None:
        received.append(chunk)
        token.cancel("user stopped")

    with pytest.raises(LLMCancelledError):
        client.collect("prompt", cancel=token, on_chunk=on_chunk)

    assert received == ["Hel"]


def test_stream_failure_after_first_chunk_is_not_retried() -> None:
    attempts: list[int] = []

    def stream_transport(_: dict[str, Any]) -> Iterator[str]:
        attempts.append(1)
        yield from _sse("partial", terminal="response.failed")

    client = ResponsesClient(
        model="gpt-5",
        transport=lambda _: _response_payload("unused"),
        stream_transport=stream_transport,
        retry_delay=0,
    )
    received: list[str] = []

    with pytest.raises(LLMTransportError):
        for chunk in client.stream_complete("prompt"):
            received.append(chunk)

    assert received == ["partial"]
    assert len(attempts) == 1


def test_iter_sse_deltas_ignores_noise_and_stops_at_done() -> None:
    lines = [
        ": keep-alive\n",
        "event: response.output_text.delta\n",
        "data: not json\n",
        "data: {\"type\": \"response.output_text.delta\", \"delta\": \"a\"}\n",
        "data: {\"type\": \"response.created\"}\n",
        "data: [DONE]\n",
        "data: {\"type\": \"response.output_text.delta\", \"delta\": \"b\"}\n",
    ]

    assert list(iter_sse_deltas(lines)) == ["a"]


def test_iter_sse_deltas_raises_on_error_event() -> None:
    lines = ['data: {"type": "error", "error": {"message": "rate limited"}}\n']

    with pytest.raises(LLMTransportError, match="rate limited"):
        list(iter_sse_deltas(lines))
