from __future__ import annotations

import os
import time
from pathlib import Path

import pytest

from acode.schema import ResponseItem, ResponseItemType, Role, ToolCall
from acode.session.history import (
    TOOL_OUTPUT_MAX_CHARS,
    TOOL_OUTPUT_MAX_LINES,
    TOOL_OUTPUT_TRUNCATION,
    ConversationHistory,
    SessionStore,
    truncate_tool_output,
)


def test_short_output_is_untouched() -> None:
    assert truncate_tool_output("") == ""
    assert truncate_tool_output("a\nb") == "a\nb"


def test_output_is_capped_by_lines_and_characters() -> None:
    many_lines = "\n".join(str(index) for index in range(TOOL_OUTPUT_MAX_LINES + 50))
    long_line = "x" * (TOOL_OUTPUT_MAX_CHARS + 10)

    by_lines = truncate_tool_output(many_lines).split("\n")
    by_chars = truncate_tool_output(long_line)

    assert len(by_lines) == TOOL_OUTPUT_MAX_LINES + 1
    assert by_lines[-1] == TOOL_OUTPUT_TRUNCATION
    assert by_chars.endswith("\n" + TOOL_OUTPUT_TRUNCATION)
    assert len(by_chars) == TOOL_OUTPUT_MAX_CHARS + 1 + len(TOOL_OUTPUT_TRUNCATION)


def test_build_messages_renders_tool_results() -> None:
    call = ToolCall(tool_name="shell", arguments={"command": "ls"}, call_id="local-0-0")
    history = ConversationHistory(
        [
            ResponseItem.message(Role.SYSTEM, "rules"),
            ResponseItem.message(Role.USER, "list files"),
            ResponseItem.message(Role.ASSISTANT, "", [call]),
            ResponseItem.tool_result("shell", "a.txt", "local-0-0"),
        ]
    )

    messages = history.build_messages()

    assert [message.role for message in messages] == [Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.TOOL]
    assert messages[2].tool_calls[0].call_id == "local-0-0"
    assert messages[3].tool_call_id == "local-0-0"
    assert messages[3].name == "shell"
    assert messages[3].content == "a.txt"


def test_items_are_snapshots() -> None:
    history = ConversationHistory([ResponseItem.message(Role.USER, "hi")])

    snapshot = history.items()
    snapshot[0].text = "changed"

    assert history.items()[0].text == "hi"


def test_store_save_load_and_list(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "sessions")
    store.save("20260101-000000-0001", [ResponseItem.message(Role.USER, "first")])
    time.sleep(0.01)
    path = store.save("20260101-000000-0002", [ResponseItem.tool_result("read_file", "data", "c1")])

    assert path.exists()
    loaded = store.load("20260101-000000-0002")
    assert loaded[0].tool_output == "data"
    assert [record.id for record in store.list_sessions()] == ["20260101-000000-0002", "20260101-000000-0001"]


def test_store_errors(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)

    with pytest.raises(KeyError):
        store.load("missing")

    (tmp_path / "broken.json").write_text("{}", encoding="utf-8")
    with pytest.raises(ValueError):
        store.load("broken")
    assert store.list_sessions() == []
    assert SessionStore(tmp_path / "absent").list_sessions() == []
    assert os.listdir(tmp_path) == ["broken.json"]


def test_tool_calls_travel_on_assistant_messages() -> None:
    item = ResponseItem.message(Role.ASSISTANT, "", [ToolCall(tool_name="shell", call_id="c1")])

    assert {kind.value for kind in ResponseItemType} == {"message", "tool_result"}
    assert item.type is ResponseItemType.MESSAGE
    assert item.tool_calls[0].call_id == "c1"
