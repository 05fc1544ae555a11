"""Local coding agent: an LLM/tool loop with approval-gated patch application."""

__version__ = "0.1.0"
