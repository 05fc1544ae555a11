"""Typed records exchanged between the session, the model client, and tools."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class Role(str, Enum):
    """Speaker of a conversation message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ResponseItemType(str, Enum):
    """Kinds of entries kept in conversation history."""

    MESSAGE = "message"
    TOOL_RESULT = "tool_result"


class ToolKind(str, Enum):
    """Shape in which a tool is offered to the model."""

    FUNCTION = "function"


class ToolSpec(RecordModel):
    """Declaration of a capability the model may invoke."""

    name: str
    description: str = ""
    kind: ToolKind = ToolKind.FUNCTION
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ToolCall(BaseModel):
    """Request from the model to run a named tool.

    ``arguments`` is kept opaque; each tool handler validates its own schema.
    """

    model_config = ConfigDict(extra="ignore")

    tool_name: str
    arguments: Any = None
    call_id: str = ""


class ResponseItem(RecordModel):
    """One append-only entry of conversation history."""

    type: ResponseItemType
    role: Optional[Role] = None
    text: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_name: str = ""
    tool_output: str = ""
    call_id: str = ""

    @classmethod
    def message(cls, role: Role, text: str, tool_calls: List[ToolCall] | None = None) -> "ResponseItem":
        return cls(
            type=ResponseItemType.MESSAGE,
            role=role,
            text=text,
            tool_calls=[call.model_copy(deep=True) for call in tool_calls or []],
        )

    @classmethod
    def tool_result(cls, tool_name: str, output: str, call_id: str) -> "ResponseItem":
        return cls(
            type=ResponseItemType.TOOL_RESULT,
            tool_name=tool_name,
            tool_output=output,
            call_id=call_id,
        )


class Message(RecordModel):
    """Chat message rendered from history for the model."""

    role: Role
    content: str
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)


class StoredSession(RecordModel):
    """On-disk representation of a session's history."""

    id: str
    updated_at: datetime = Field(default_factory=utc_now)
    history: List[ResponseItem] = Field(default_factory=list)


__all__ = [
    "Message",
    "RecordModel",
    "ResponseItem",
    "ResponseItemType",
    "Role",
    "StoredSession",
    "ToolCall",
    "ToolKind",
    "ToolSpec",
    "utc_now",
]
