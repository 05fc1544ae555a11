"""Built-in tools offered to the model: shell, file reading, search, and edits."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..schema import ToolSpec
from .patch import PatchError, apply_patch_text, extract_patch_text, format_patch_result
from .registry import ToolCaller, ToolContext, ToolExecutionError, ToolHandler, ToolRegistry

LOGGER = logging.getLogger(__name__)

DEFAULT_SHELL_TIMEOUT_MS = 60_000
DEFAULT_READ_LIMIT = 512 * 1024
DEFAULT_MAX_MATCHES = 200
NO_MATCHES = "no matches found"

SandboxPolicy = Literal["full", "readonly", "workspace"]
_POLICY_ALIASES = {
    "full": "full",
    "danger": "full",
    "dangerfullaccess": "full",
    "readonly": "readonly",
    "read-only": "readonly",
    "workspace": "workspace",
    "workspace-write": "workspace",
    "workspacewrite": "workspace",
}


def parse_sandbox_policy(value: str | None) -> SandboxPolicy:
    """Normalise a sandbox policy label; unknown labels are an error."""
    if value is None or not value.strip():
        return "workspace"
    key = value.strip().lower()
    if key not in _POLICY_ALIASES:
        raise ToolExecutionError(f"unknown sandbox policy: {value!r}")
    return _POLICY_ALIASES[key]  # type: ignore[return-value]


class _Arguments(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ShellArguments(_Arguments):
    command: str = Field(description="Shell command to run in the workspace.")
    timeout_ms: Optional[int] = Field(default=None, ge=1, description="Timeout in milliseconds (default 60000).")
    policy: Optional[str] = Field(
        default=None,
        description="Sandbox policy label: full, readonly, or workspace.",
    )


class ReadFileArguments(_Arguments):
    path: str = Field(description="File to read, relative to the workspace or absolute.")
    max_bytes: Optional[int] = Field(default=None, ge=1, description="Maximum number of bytes to return.")


class ListDirArguments(_Arguments):
    path: str = Field(description="Directory to list.")


class GrepFilesArguments(_Arguments):
    root: str = Field(default=".", description="Directory to search from.")
    pattern: str = Field(description="Regular expression or literal text to find.")
    max_matches: Optional[int] = Field(default=None, ge=1, description="Maximum matching lines to return.")


class EditFileArguments(_Arguments):
    file: str = Field(description="File to modify.")
    from_: str = Field(alias="from", description="Exact text to replace; must occur in the file.")
    to: str = Field(description="Replacement text.")
    all: bool = Field(default=False, description="Replace every occurrence instead of a unique one.")


def _detect_shell() -> List[str]:
    if sys.platform.startswith("win"):
        return [os.environ.get("COMSPEC", "cmd.exe"), "/C"]
    shell = os.environ.get("SHELL") or shutil.which("bash") or "/bin/sh"
    return [shell, "-c"]


class ShellTool(ToolHandler):
    name = "shell"
    description = "Run a shell command in the workspace and return its combined output."
    arguments_model = ShellArguments

    def run(self, arguments: ShellArguments, context: ToolContext) -> str:
        command = arguments.command.strip()
        if not command:
            raise ToolExecutionError("shell requires a non-empty command")
        policy = parse_sandbox_policy(arguments.policy)
        timeout = (arguments.timeout_ms or DEFAULT_SHELL_TIMEOUT_MS) / 1000.0
        if context.cancel is not None:
            context.cancel.raise_if_cancelled()

        LOGGER.debug("shell policy=%s timeout=%.1fs command=%r", policy, timeout, command)
        started = time.monotonic()
        timed_out = False
        try:
            process = subprocess.run(  # noqa: S603 - the model-issued command is the point of this tool
                [*_detect_shell(), command],
                cwd=context.workspace,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
            output = (process.stdout or "") + (process.stderr or "")
            exit_code = process.returncode
        except subprocess.TimeoutExpired as error:
            timed_out = True
            exit_code = -1
            output = _decode(error.stdout) + _decode(error.stderr)
        except OSError as error:
            raise ToolExecutionError(f"failed to start shell: {error}") from error
        duration = time.monotonic() - started

        output = output.rstrip("\n") or "(no output)"
        summary = f"command={command!r} exit_code={exit_code} duration={duration:.2f}s timed_out={timed_out}"
        return f"{output}\n---\n{summary}"


def _decode(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class ReadFileTool(ToolHandler):
    name = "read_file"
    description = "Read a text file from the workspace."
    arguments_model = ReadFileArguments

    def run(self, arguments: ReadFileArguments, context: ToolContext) -> str:
        if not arguments.path.strip():
            raise ToolExecutionError("read_file requires a path")
        path = context.resolve(arguments.path)
        limit = arguments.max_bytes or DEFAULT_READ_LIMIT
        try:
            with path.open("rb") as handle:
                data = handle.read(limit)
        except OSError as error:
            raise ToolExecutionError(f"cannot read {path}: {error}") from error
        return data.decode("utf-8", errors="replace")


class ListDirTool(ToolHandler):
    name = "list_dir"
    description = "List the entries of a directory; directories end with '/'."
    arguments_model = ListDirArguments

    def run(self, arguments: ListDirArguments, context: ToolContext) -> str:
        if not arguments.path.strip():
            raise ToolExecutionError("list_dir requires a path")
        path = context.resolve(arguments.path)
        try:
            entries = sorted(path.iterdir(), key=lambda entry: entry.name)
        except OSError as error:
            raise ToolExecutionError(f"cannot list {path}: {error}") from error
        return "".join(f"{entry.name}/\n" if entry.is_dir() else f"{entry.name}\n" for entry in entries)


class GrepFilesTool(ToolHandler):
    name = "grep_files"
    description = "Search files under a directory for a pattern."
    arguments_model = GrepFilesArguments

    def run(self, arguments: GrepFilesArguments, context: ToolContext) -> str:
        if not arguments.pattern.strip():
            raise ToolExecutionError("grep_files requires a non-empty pattern")
        root = context.resolve(arguments.root or ".")
        max_matches = arguments.max_matches or DEFAULT_MAX_MATCHES

        output = self._ripgrep(root, arguments.pattern, max_matches)
        if output is None:
            output = self._walk(root, arguments.pattern, max_matches)
        return output if output.strip() else NO_MATCHES

    @staticmethod
    def _ripgrep(root: Path, pattern: str, max_matches: int) -> str | None:
        executable = shutil.which("rg")
        if executable is None:
            return None
        command = [
            executable,
            "--hidden",
            "--line-number",
            "--no-heading",
            "--color",
            "never",
            "-S",
            "-m",
            str(max_matches),
            pattern,
            str(root),
        ]
        try:
            process = subprocess.run(command, capture_output=True, text=True, timeout=5, check=False)  # noqa: S603
        except (OSError, subprocess.TimeoutExpired) as error:
            LOGGER.debug("ripgrep failed, falling back to a directory walk: %s", error)
            return None
        # rg exits with 1 when nothing matched
        if process.returncode not in (0, 1):
            return None
        return process.stdout

    @staticmethod
    def _walk(root: Path, pattern: str, max_matches: int) -> str:
        lines: List[str] = []
        for directory, _, files in os.walk(root):
            for filename in sorted(files):
                path = Path(directory) / filename
                try:
                    content = path.read_text(encoding="utf-8", errors="ignore")
                except OSError:
                    continue
                if pattern not in content:
                    continue
                lines.append(f"{path}: contains {pattern!r}")
                if len(lines) >= max_matches:
                    return "\n".join(lines)
        return "\n".join(lines)


class EditFileTool(ToolHandler):
    name = "edit_file"
    description = "Replace literal text in a file; the match must be unique unless 'all' is set."
    arguments_model = EditFileArguments

    def run(self, arguments: EditFileArguments, context: ToolContext) -> str:
        if not arguments.file.strip() or not arguments.from_:
            raise ToolExecutionError("edit_file requires 'file' and 'from'")
        path = context.resolve(arguments.file)
        if not path.is_file():
            raise ToolExecutionError(f"target is not a regular file: {path}")
        try:
            with path.open("r", encoding="utf-8", newline="") as handle:
                content = handle.read()
        except (OSError, UnicodeDecodeError) as error:
            raise ToolExecutionError(f"cannot read {path}: {error}") from error

        count = content.count(arguments.from_)
        if count == 0:
            raise ToolExecutionError(f"text to replace was not found: {arguments.from_!r}")
        if count > 1 and not arguments.all:
            raise ToolExecutionError(
                f"'from' occurs {count} times; make it unique or set all=true"
            )
        updated = content.replace(arguments.from_, arguments.to, -1 if arguments.all else 1)
        if updated == content:
            raise ToolExecutionError("edit produced no change")
        try:
            with path.open("w", encoding="utf-8", newline="") as handle:
                handle.write(updated)
        except OSError as error:
            raise ToolExecutionError(f"cannot write {path}: {error}") from error
        return f"Updated file: {path}"


APPLY_PATCH_TOOL = "apply_patch"


class ApplyPatchTool(ToolHandler):
    name = APPLY_PATCH_TOOL
    description = (
        "Edit files with a patch. Wrap operations in '*** Begin Patch' / '*** End Patch'; "
        "use '*** Add File: <path>' with '+' lines, '*** Delete File: <path>', or "
        "'*** Update File: <path>' (optionally '*** Move to: <path>') followed by '@@' chunks "
        "of ' ', '-', and '+' lines."
    )

    def spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            kind=self.kind,
            parameters={
                "type": "object",
                "properties": {"input": {"type": "string", "description": "The entire patch text."}},
                "required": ["input"],
                "additionalProperties": False,
            },
        )

    def parse_arguments(self, arguments: Any) -> str:
        try:
            return extract_patch_text(arguments)
        except PatchError as error:
            raise ToolExecutionError(str(error)) from error

    def run(self, arguments: str, context: ToolContext) -> str:
        result = apply_patch_text(arguments, context.workspace)
        return format_patch_result(result)


def default_handlers() -> List[ToolHandler]:
    return [ShellTool(), ReadFileTool(), ListDirTool(), GrepFilesTool(), EditFileTool(), ApplyPatchTool()]


def build_default_registry(workspace: Path | str, *, fallback: ToolCaller | None = None) -> ToolRegistry:
    """Registry with every built-in tool and an optional remote fallback."""
    return ToolRegistry(workspace, default_handlers(), fallback=fallback)


__all__ = [
    "APPLY_PATCH_TOOL",
    "ApplyPatchTool",
    "EditFileTool",
    "GrepFilesTool",
    "ListDirTool",
    "ReadFileTool",
    "ShellTool",
    "build_default_registry",
    "default_handlers",
    "parse_sandbox_policy",
]
