"""Normalise model replies into an ordered list of tool calls."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any, List

from pydantic import ValidationError

from ..models.llm_client import LLMResult
from ..schema import ToolCall
from ..utils.json_repair import JSONRepairError, loads_lenient

LOGGER = logging.getLogger(__name__)


class ToolCallParseError(ValueError):
    """Raised when free text is not a tool-call JSON document."""


def _coerce_call(entry: Any) -> ToolCall:
    if not isinstance(entry, Mapping):
        raise ToolCallParseError(f"tool call must be an object, got {type(entry).__name__}")
    name = entry.get("tool_name")
    if not isinstance(name, str) or not name.strip():
        raise ToolCallParseError("tool call is missing 'tool_name'")
    payload = {**entry, "tool_name": name.strip()}
    call_id = payload.get("call_id")
    if isinstance(call_id, (int, float)) and not isinstance(call_id, bool):
        payload["call_id"] = str(call_id)
    elif not isinstance(call_id, str):
        # ensure_call_ids assigns a local id instead
        payload.pop("call_id", None)
    try:
        return ToolCall.model_validate(payload)
    except ValidationError as error:
        raise ToolCallParseError(str(error)) from error


def parse_tool_calls_json(raw: str) -> List[ToolCall]:
    """Parse ``{"tool_name": ..., "arguments": {...}}`` or a JSON array of them."""
    if not raw or not raw.strip():
        raise ToolCallParseError("tool call JSON is empty")
    try:
        decoded = loads_lenient(raw)
    except JSONRepairError as error:
        raise ToolCallParseError(str(error)) from error

    if isinstance(decoded, Mapping):
        return [_coerce_call(decoded)]
    if isinstance(decoded, Sequence) and not isinstance(decoded, (str, bytes)):
        if not decoded:
            raise ToolCallParseError("tool call array is empty")
        return [_coerce_call(entry) for entry in decoded]
    raise ToolCallParseError("tool call JSON must be an object or an array")


def resolve_tool_calls(result: LLMResult, step: int) -> List[ToolCall]:
    """Return the calls a reply asks for; an empty list means a final answer.

    Structured calls win; otherwise the reply text is tried as the JSON
    tool-call protocol.
    """
    if result.tool_calls:
        return list(result.tool_calls)
    try:
        return parse_tool_calls_json(result.content)
    except ToolCallParseError as error:
        LOGGER.debug("step=%d reply is not a tool call: %s", step, error)
        return []


def ensure_call_ids(calls: List[ToolCall], step: int) -> List[ToolCall]:
    """Fill in missing call ids as ``local-<step>-<position>``.

    Calls that already carry an id are returned unchanged; the others are
    replaced by copies so the originals are never mutated.
    """
    resolved: List[ToolCall] = []
    for position, call in enumerate(calls):
        if call.call_id.strip():
            resolved.append(call)
            continue
        resolved.append(call.model_copy(update={"call_id": f"local-{step}-{position}"}))
    return resolved


__all__ = ["ToolCallParseError", "ensure_call_ids", "parse_tool_calls_json", "resolve_tool_calls"]
