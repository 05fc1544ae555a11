"""Conversation history kept by a session and its on-disk store."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List

from pydantic import ValidationError

from ..schema import Message, ResponseItem, ResponseItemType, Role, StoredSession, utc_now

LOGGER = logging.getLogger(__name__)

TOOL_OUTPUT_MAX_CHARS = 40960
TOOL_OUTPUT_MAX_LINES = 800
TOOL_OUTPUT_TRUNCATION = "...(tool output truncated)"


def truncate_tool_output(text: str) -> str:
    """Cap tool output by characters and lines before it reaches the model."""
    if not text:
        return text
    truncated = text[:TOOL_OUTPUT_MAX_CHARS]
    lines = truncated.split("\n")
    if len(lines) > TOOL_OUTPUT_MAX_LINES:
        lines = [*lines[:TOOL_OUTPUT_MAX_LINES], TOOL_OUTPUT_TRUNCATION]
    elif len(text) > TOOL_OUTPUT_MAX_CHARS:
        lines.append(TOOL_OUTPUT_TRUNCATION)
    return "\n".join(lines)


class ConversationHistory:
    """Append-only list of :class:`ResponseItem` with prompt rendering."""

    def __init__(self, items: Iterable[ResponseItem] = ()) -> None:
        self._items: List[ResponseItem] = [item.model_copy(deep=True) for item in items]

    def __len__(self) -> int:
        return len(self._items)

    def record(self, item: ResponseItem) -> None:
        self._items.append(item)

    def items(self) -> List[ResponseItem]:
        """Return a snapshot copy of the recorded items."""
        return [item.model_copy(deep=True) for item in self._items]

    def build_messages(self) -> List[Message]:
        """Render history as chat messages in recorded order."""
        messages: List[Message] = []
        for item in self._items:
            if item.type is ResponseItemType.MESSAGE:
                messages.append(
                    Message(
                        role=item.role or Role.USER,
                        content=item.text,
                        tool_calls=list(item.tool_calls),
                    )
                )
            elif item.type is ResponseItemType.TOOL_RESULT:
                messages.append(
                    Message(
                        role=Role.TOOL,
                        content=truncate_tool_output(item.tool_output),
                        name=item.tool_name or None,
                        tool_call_id=item.call_id or None,
                    )
                )
        return messages


class SessionStore:
    """Persist session histories as JSON documents under ``root``."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def _path(self, session_id: str) -> Path:
        return self.root / f"{session_id}.json"

    def save(self, session_id: str, history: Iterable[ResponseItem]) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        record = StoredSession(id=session_id, updated_at=utc_now(), history=list(history))
        path = self._path(session_id)
        path.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        return path

    def load(self, session_id: str) -> List[ResponseItem]:
        path = self._path(session_id)
        try:
            payload = path.read_text(encoding="utf-8")
        except FileNotFoundError as error:
            raise KeyError(f"session {session_id!r} not found") from error
        try:
            record = StoredSession.model_validate_json(payload)
        except ValidationError as error:
            raise ValueError(f"session file {path} is invalid: {error}") from error
        return list(record.history)

    def list_sessions(self) -> List[StoredSession]:
        """Return stored sessions, most recently updated first."""
        if not self.root.exists():
            return []
        sessions: List[StoredSession] = []
        for path in sorted(self.root.glob("*.json")):
            try:
                sessions.append(StoredSession.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError) as error:
                LOGGER.warning("Skipping unreadable session file %s: %s", path, error)
        sessions.sort(key=lambda item: item.updated_at, reverse=True)
        return sessions


__all__ = ["ConversationHistory", "SessionStore", "truncate_tool_output"]
