"""Client base class and streaming protocol shared by all model integrations."""

from __future__ import annotations

import errno
import socket
import urllib.error
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterator, List, Optional

from ..schema import Message, ResponseItem, ToolCall, ToolSpec

if TYPE_CHECKING:  # pragma: no cover
    from ..session.cancel import CancelToken

__all__ = [
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


class LLMClientError(RuntimeError):
    """Base error raised for model client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""

    def __init__(self, message: str, *, network: bool = False) -> None:
        super().__init__(message)
        self.network = network


class LLMResponseFormatError(LLMClientError):
    """Raised when the model returns a payload the client cannot interpret."""


@dataclass(slots=True)
class Prompt:
    """Complete input for one model call."""

    messages: List[Message] = field(default_factory=list)
    tools: List[ToolSpec] = field(default_factory=list)
    items: List[ResponseItem] = field(default_factory=list)


@dataclass(slots=True)
class LLMResult:
    """Assistant reply with any structured tool calls attached to it."""

    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)


class LLMEventKind(str, Enum):
    """Events produced while streaming a completion."""

    CREATED = "created"
    TEXT_DELTA = "text_delta"
    TOOL_CALL_DELTA = "tool_call_delta"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(slots=True)
class LLMEvent:
    """Single streamed event; ``result`` is set on ``completed`` only."""

    kind: LLMEventKind
    text: str = ""
    result: Optional[LLMResult] = None
    error: Optional[BaseException] = None


_NETWORK_ERRNOS = {
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ETIMEDOUT,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.EPIPE,
}
_NETWORK_INDICATORS = (
    "no such host",
    "temporary failure in name resolution",
    "connection refused",
    "connection reset",
    "network is unreachable",
    "timed out",
    "tls handshake",
)


def is_network_error(error: BaseException | None) -> bool:
    """Return True when ``error`` (or its cause chain) is network related.

    Used for reporting only; network failures are not retried.
    """
    seen: set[int] = set()
    current = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, LLMTransportError) and current.network:
            return True
        if isinstance(current, (TimeoutError, socket.timeout, socket.gaierror, ConnectionError, urllib.error.URLError)):
            return True
        if isinstance(current, OSError) and current.errno in _NETWORK_ERRNOS:
            return True
        lowered = str(current).lower()
        if any(indicator in lowered for indicator in _NETWORK_INDICATORS):
            return True
        current = current.__cause__ or current.__context__
    return False


class LLMClient:
    """Base model client.

    Subclasses implement :meth:`_raw_complete`. :meth:`stream` falls back to a
    single ``text_delta`` followed by ``completed`` for clients without native
    streaming.
    """

    def __init__(self, model: str, *, timeout: float = 120.0) -> None:
        self._model = model
        self._timeout = timeout

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    @property
    def timeout(self) -> float:
        return self._timeout

    def complete(self, prompt: Prompt, *, cancel: "CancelToken | None" = None) -> LLMResult:
        """Run a non-streaming completion and return the structured result."""
        if cancel is not None:
            cancel.raise_if_cancelled()
        return self._raw_complete(prompt)

    def stream(self, prompt: Prompt, *, cancel: "CancelToken | None" = None) -> Iterator[LLMEvent]:
        """Yield completion events; failures are delivered as ``error`` events."""
        yield LLMEvent(kind=LLMEventKind.CREATED)
        try:
            result = self.complete(prompt, cancel=cancel)
        except LLMClientError as error:
            yield LLMEvent(kind=LLMEventKind.ERROR, error=error)
            return
        if result.content:
            yield LLMEvent(kind=LLMEventKind.TEXT_DELTA, text=result.content)
        yield LLMEvent(kind=LLMEventKind.COMPLETED, result=result)

    def _raw_complete(self, prompt: Prompt) -> LLMResult:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_complete().")
