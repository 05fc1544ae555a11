"""Prompt templates shared by the session loop and the CLI."""

from __future__ import annotations

import os
import platform
from pathlib import Path
from typing import Sequence

from .schema import ToolSpec

TOOL_CALL_INSTRUCTION = (
    "When you need a tool and the API offers no native function calling, reply with only JSON: "
    'a single object {"tool_name": "<name>", "arguments": {...}} or a JSON array of such objects, '
    "executed in array order. Do not wrap it in markdown or add commentary. "
    "When the task is complete, reply with plain text and no JSON."
)

PATCH_INSTRUCTION = (
    "Edit files with the `apply_patch` tool. A patch starts with `*** Begin Patch` and ends with "
    "`*** End Patch`. Use `*** Add File: <path>` followed by `+` lines, `*** Delete File: <path>`, or "
    "`*** Update File: <path>` (optionally `*** Move to: <path>`) followed by `@@` chunks whose lines "
    "start with a space (context), `-` (removed) or `+` (added). Paths are relative to the workspace."
)

COMPACT_PROMPT = (
    "Summarise the conversation so far so that work can continue from the summary alone. "
    "Keep the user's goals, decisions made, files touched, commands run with their outcome, "
    "and anything still outstanding. Reply with the summary only."
)

COMPACT_SUMMARY_PREFIX = "Summary of the earlier conversation (history compacted):\n\n"


def render_tool_list(tools: Sequence[ToolSpec]) -> str:
    """Format tool specs as a numbered list block."""
    if not tools:
        return ""
    body = "\n".join(
        f"{index}. `{tool.name}`: {tool.description.strip()}" for index, tool in enumerate(tools, start=1)
    )
    return f"## Tools\n{body}"


def build_system_prompt(tools: Sequence[ToolSpec], guidance: Sequence[str] = ()) -> str:
    """Return the system prompt advertising ``tools`` and the tool-call protocol."""
    sections = [
        "You are a coding agent working inside the user's repository. Inspect before you edit, "
        "make small focused changes, and verify them with the available tools.",
        render_tool_list(tools),
        f"## Tool Calls\n{TOOL_CALL_INSTRUCTION}",
        f"## Editing\n{PATCH_INSTRUCTION}",
    ]
    lines = [line.strip() for line in guidance if line.strip()]
    if lines:
        sections.append("## Project Guidance\n" + "\n".join(f"- {line}" for line in lines))
    return "\n\n".join(section for section in sections if section)


def render_environment_context(workspace: Path, *, shell: str | None = None) -> str:
    """Describe the local environment as a user message for the model."""
    shell = shell or os.environ.get("SHELL") or ("cmd.exe" if platform.system() == "Windows" else "/bin/sh")
    return (
        "<environment_context>\n"
        f"  <cwd>{workspace.resolve().as_posix()}</cwd>\n"
        f"  <os>{platform.system()}</os>\n"
        f"  <shell>{shell}</shell>\n"
        "</environment_context>"
    )


__all__ = [
    "COMPACT_PROMPT",
    "COMPACT_SUMMARY_PREFIX",
    "PATCH_INSTRUCTION",
    "TOOL_CALL_INSTRUCTION",
    "build_system_prompt",
    "render_environment_context",
    "render_tool_list",
]
