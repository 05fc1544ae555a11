"""Lenient JSON decoding for payloads produced by language models."""

from __future__ import annotations

import ast
import json
import re
from typing import Any

__all__ = ["JSONRepairError", "loads_lenient", "normalise_json_string", "strip_code_fence"]


class JSONRepairError(ValueError):
    """Raised when text cannot be coerced into a JSON document."""


def strip_code_fence(payload: str) -> str:
    """Remove Markdown-style code fences that wrap JSON payloads."""
    if not payload.startswith("```"):
        return payload
    fence_header_match = re.match(r"```(?:json)?", payload[:10], re.IGNORECASE)
    if not fence_header_match:
        return payload
    fence_end = payload.find("```", len(fence_header_match.group(0)))
    if fence_end == -1:
        return payload
    content_start = payload.find("\n", len(fence_header_match.group(0)))
    if content_start == -1:
        return payload
    return payload[content_start + 1 : fence_end].strip()


def normalise_json_string(payload: str) -> str:
    """Normalise common non-JSON characters emitted by models."""
    if not payload:
        return payload
    translation = {
        0x201C: '"',
        0x201D: '"',
        0x2018: "'",
        0x2019: "'",
        0xFF07: "'",
        0x00A0: " ",
        0xFEFF: "",
    }
    return payload.translate(str.maketrans(translation))


def _strip_trailing_commas(payload: str) -> str:
    """Remove trailing commas before closing braces/brackets."""
    if not payload:
        return payload
    return re.sub(r",(\s*[}\]])", r"\1", payload)


def _unwrap_fenced(raw: str) -> str | None:
    """Return the payload inside a Markdown fence, or ``None`` when unfenced."""
    stripped = raw.strip()
    unfenced = strip_code_fence(stripped)
    if unfenced == stripped:
        return None
    return _strip_trailing_commas(unfenced)


def _coerce_python_literal(candidate: str) -> Any | None:
    """Fall back to Python literal parsing when JSON decoding fails."""
    try:
        literal = ast.literal_eval(candidate)
    except (SyntaxError, ValueError, MemoryError, RecursionError):
        return None
    return _normalise_literal(literal)


def _normalise_literal(value: Any) -> Any:
    """Convert Python literals into JSON-compatible structures recursively."""
    if isinstance(value, dict):
        return {str(key): _normalise_literal(sub) for key, sub in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalise_literal(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def loads_lenient(raw: str) -> Any:
    """Decode ``raw`` as JSON, tolerating fences, smart quotes, and trailing commas.

    Only whole-document payloads are accepted; prose that merely contains a
    JSON fragment is rejected so conversational replies stay conversational.
    """
    text = raw.strip()
    if not text:
        raise JSONRepairError("empty payload")

    candidates = [text]
    unfenced = _unwrap_fenced(text)
    if unfenced:
        candidates.append(unfenced)
    for candidate in list(candidates):
        normalised = normalise_json_string(candidate)
        if normalised not in candidates:
            candidates.append(normalised)
        trimmed = _strip_trailing_commas(normalised)
        if trimmed not in candidates:
            candidates.append(trimmed)

    for candidate in candidates:
        if not candidate or candidate[0] not in "[{\"":
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pythonic = _coerce_python_literal(candidate)
            if pythonic is not None:
                return pythonic

    raise JSONRepairError(f"not a JSON document: {text[:200]}")
