from __future__ import annotations

from pathlib import Path

from acode.prompts import build_system_prompt, render_environment_context, render_tool_list
from acode.schema import ToolSpec


def test_system_prompt_lists_tools_and_guidance() -> None:
    tools = [ToolSpec(name="shell", description="Run commands. "), ToolSpec(name="apply_patch", description="Edit.")]

    prompt = build_system_prompt(tools, ["  Run the tests.  ", ""])

    assert "1. `shell`: Run commands.\n2. `apply_patch`: Edit." in prompt
    assert "*** Begin Patch" in prompt
    assert prompt.endswith("## Project Guidance\n- Run the tests.")


def test_empty_tool_list_is_omitted() -> None:
    assert render_tool_list([]) == ""
    assert "## Tools" not in build_system_prompt([])


def test_environment_context_names_the_workspace(tmp_path: Path) -> None:
    context = render_environment_context(tmp_path, shell="/bin/zsh")

    assert context.startswith("<environment_context>\n")
    assert f"<cwd>{tmp_path.resolve().as_posix()}</cwd>" in context
    assert "<shell>/bin/zsh</shell>" in context
