"""Events emitted by a session and the sinks that deliver them."""

from __future__ import annotations

import logging
import queue
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Protocol

from ..schema import utc_now

LOGGER = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Lifecycle, model, tool, and approval events of a turn."""

    TURN_STARTED = "turn_started"
    TURN_FINISHED = "turn_finished"
    AGENT_THINKING = "agent_thinking"
    AGENT_TEXT_DELTA = "agent_text_delta"
    AGENT_TEXT_DONE = "agent_text_done"
    TOOL_PLANNED = "tool_planned"
    TOOL_STARTED = "tool_started"
    TOOL_OUTPUT_DELTA = "tool_output_delta"
    TOOL_FINISHED = "tool_finished"
    PATCH_APPROVAL_REQUEST = "patch_approval_request"
    PATCH_APPROVAL_RESULT = "patch_approval_result"


@dataclass(slots=True)
class Event:
    """Flat event payload; unused fields stay at their defaults."""

    kind: EventKind
    step: int = 0
    tool_name: str = ""
    message: str = ""
    request_id: str = ""
    paths: List[str] = field(default_factory=list)
    approved: Optional[bool] = None
    time: datetime = field(default_factory=utc_now)


class EventSink(Protocol):
    """Receiver of session events. ``send`` must never block the caller."""

    def send(self, event: Event) -> None:  # pragma: no cover - protocol
        ...


class NullEventSink:
    """Discard every event."""

    def send(self, event: Event) -> None:
        return None


class QueueEventSink:
    """Push events onto a bounded queue, dropping them when it is full."""

    def __init__(self, target: "queue.Queue[Event] | None" = None, *, maxsize: int = 256) -> None:
        self.queue: "queue.Queue[Event]" = target if target is not None else queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def send(self, event: Event) -> None:
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1

    def drain(self) -> List[Event]:
        """Return every queued event without blocking."""
        events: List[Event] = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events


class CallbackEventSink:
    """Invoke ``callback`` inline; callback failures are logged and ignored."""

    def __init__(self, callback: Callable[[Event], None]) -> None:
        self._callback = callback

    def send(self, event: Event) -> None:
        try:
            self._callback(event)
        except Exception:  # noqa: BLE001 - observers must not break the turn
            LOGGER.warning("Event callback failed for %s", event.kind.value, exc_info=True)


__all__ = [
    "CallbackEventSink",
    "Event",
    "EventKind",
    "EventSink",
    "NullEventSink",
    "QueueEventSink",
]
