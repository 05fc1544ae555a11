"""Tool integrations exposed to the model."""

from .builtin import (
    APPLY_PATCH_TOOL,
    ApplyPatchTool,
    EditFileTool,
    GrepFilesTool,
    ListDirTool,
    ReadFileTool,
    ShellTool,
    build_default_registry,
    default_handlers,
)
from .patch import (
    ApplyPatchResult,
    Patch,
    PatchApplyError,
    PatchError,
    PatchParseError,
    PatchRejectedError,
    PatchSummary,
    apply_patch,
    apply_patch_text,
    parse_patch,
    summarize_patch,
)
from .registry import ToolCaller, ToolContext, ToolExecutionError, ToolHandler, ToolRegistry
from .safety import ApprovalPolicy, PatchSafetyDecision, SafetyLevel, classify_patch, evaluate_patch_safety
from .seek import MATCH_STRATEGIES, seek_sequence

__all__ = [
    "APPLY_PATCH_TOOL",
    "ApplyPatchResult",
    "ApplyPatchTool",
    "ApprovalPolicy",
    "EditFileTool",
    "GrepFilesTool",
    "ListDirTool",
    "MATCH_STRATEGIES",
    "Patch",
    "PatchApplyError",
    "PatchError",
    "PatchParseError",
    "PatchRejectedError",
    "PatchSafetyDecision",
    "PatchSummary",
    "ReadFileTool",
    "SafetyLevel",
    "ShellTool",
    "ToolCaller",
    "ToolContext",
    "ToolExecutionError",
    "ToolHandler",
    "ToolRegistry",
    "apply_patch",
    "apply_patch_text",
    "build_default_registry",
    "classify_patch",
    "default_handlers",
    "evaluate_patch_safety",
    "parse_patch",
    "seek_sequence",
    "summarize_patch",
]
