"""Convenience exports for model client implementations."""

from .chat import ChatCompletionsClient
from .llm_client import (
    LLMClient,
    LLMClientError,
    LLMEvent,
    LLMEventKind,
    LLMResponseFormatError,
    LLMResult,
    LLMTransportError,
    Prompt,
    is_network_error,
)

__all__ = [
    "ChatCompletionsClient",
    "LLMClient",
    "LLMClientError",
    "LLMEvent",
    "LLMEventKind",
    "LLMResponseFormatError",
    "LLMResult",
    "LLMTransportError",
    "Prompt",
    "is_network_error",
]
