"""Convenience exports for autofix model client implementations."""

from .llm_client import (
    LLMCancelledError,
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
    ModelCapability,
    collect_stream,
)
from .responses import ResponsesClient

__all__ = [
    "LLMCancelledError",
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "ModelCapability",
    "ResponsesClient",
    "collect_stream",
]
