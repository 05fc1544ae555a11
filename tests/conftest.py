from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Sequence, Union

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from acode.models.llm_client import LLMClient, LLMResult, Prompt  # noqa: E402
from acode.schema import ToolCall  # noqa: E402

Reply = Union[str, LLMResult, Exception]


class ScriptedLLMClient(LLMClient):
    """In-memory client replaying canned replies and recording every prompt."""

    def __init__(self, replies: Sequence[Reply], *, repeat_last: bool = False) -> None:
        super().__init__("scripted", timeout=5.0)
        self._replies: List[Reply] = list(replies)
        self._repeat_last = repeat_last
        self.prompts: List[Prompt] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def _raw_complete(self, prompt: Prompt) -> LLMResult:
        self.prompts.append(prompt)
        if not self._replies:
            raise AssertionError("scripted client ran out of replies")
        reply = self._replies[0] if self._repeat_last and len(self._replies) == 1 else self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return LLMResult(content=reply)
        return LLMResult(content=reply.content, tool_calls=[call.model_copy(deep=True) for call in reply.tool_calls])


def tool_reply(tool_name: str, arguments: object, call_id: str = "", content: str = "") -> LLMResult:
    """Build a structured reply carrying a single tool call."""
    return LLMResult(content=content, tool_calls=[ToolCall(tool_name=tool_name, arguments=arguments, call_id=call_id)])


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root
