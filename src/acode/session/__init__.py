"""Session runtime: turn loop, approvals, events, and history."""

from .approval import ApprovalDecision, ApprovalGate, ApprovalTimeoutError
from .cancel import CancelToken, TurnCancelledError
from .controller import Session, SessionBusyError, SessionSettings, TurnOutcome, TurnStatus
from .events import CallbackEventSink, Event, EventKind, EventSink, NullEventSink, QueueEventSink
from .history import ConversationHistory, SessionStore
from .resolver import ensure_call_ids, parse_tool_calls_json, resolve_tool_calls

__all__ = [
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalTimeoutError",
    "CallbackEventSink",
    "CancelToken",
    "ConversationHistory",
    "Event",
    "EventKind",
    "EventSink",
    "NullEventSink",
    "QueueEventSink",
    "Session",
    "SessionBusyError",
    "SessionSettings",
    "SessionStore",
    "TurnCancelledError",
    "TurnOutcome",
    "TurnStatus",
    "ensure_call_ids",
    "parse_tool_calls_json",
    "resolve_tool_calls",
]
