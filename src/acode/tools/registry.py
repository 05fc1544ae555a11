"""Name-to-handler registry that executes tool calls for the session."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Protocol, Type

from pydantic import BaseModel, ValidationError

from ..schema import ToolCall, ToolKind, ToolSpec

if TYPE_CHECKING:  # pragma: no cover
    from ..session.cancel import CancelToken

LOGGER = logging.getLogger(__name__)


class ToolExecutionError(RuntimeError):
    """Raised when a tool cannot run or reports a failure."""


@dataclass(slots=True)
class ToolContext:
    """Execution environment handed to every tool handler."""

    workspace: Path
    cancel: "CancelToken | None" = None

    def resolve(self, raw: str) -> Path:
        """Resolve a user-supplied path against the workspace."""
        candidate = Path(raw.strip() or ".").expanduser()
        if not candidate.is_absolute():
            candidate = self.workspace / candidate
        return candidate


class ToolCaller(Protocol):
    """Bridge to tools hosted outside this process."""

    def call_tool(self, name: str, arguments: Any) -> str:  # pragma: no cover - protocol
        ...


class ToolHandler:
    """Base class for a named tool with its own typed argument schema."""

    name: str = ""
    description: str = ""
    kind: ToolKind = ToolKind.FUNCTION
    arguments_model: Optional[Type[BaseModel]] = None

    def spec(self) -> ToolSpec:
        parameters: Dict[str, Any] = {"type": "object", "properties": {}}
        if self.arguments_model is not None:
            parameters = self.arguments_model.model_json_schema(by_alias=True)
            parameters.pop("title", None)
        return ToolSpec(name=self.name, description=self.description, kind=self.kind, parameters=parameters)

    def parse_arguments(self, arguments: Any) -> Any:
        """Validate opaque call arguments against :attr:`arguments_model`."""
        if self.arguments_model is None:
            return arguments
        payload = arguments
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8", errors="replace")
        if isinstance(payload, str):
            try:
                payload = json.loads(payload) if payload.strip() else {}
            except json.JSONDecodeError as error:
                raise ToolExecutionError(f"invalid {self.name} arguments: {error}") from error
        if payload is None:
            payload = {}
        try:
            return self.arguments_model.model_validate(payload)
        except ValidationError as error:
            raise ToolExecutionError(f"invalid {self.name} arguments: {error}") from error

    def run(self, arguments: Any, context: ToolContext) -> str:
        raise NotImplementedError("Subclasses must implement run().")


class RemoteToolHandler(ToolHandler):
    """Fallback that forwards unregistered tool names to a :class:`ToolCaller`."""

    def __init__(self, caller: ToolCaller) -> None:
        self._caller = caller

    def invoke(self, call: ToolCall) -> str:
        try:
            return self._caller.call_tool(call.tool_name, call.arguments)
        except ToolExecutionError:
            raise
        except Exception as error:
            raise ToolExecutionError(f"remote tool {call.tool_name} failed: {error}") from error


class ToolRegistry:
    """Explicit registry built at startup; implements the tool executor role."""

    def __init__(
        self,
        workspace: Path | str,
        handlers: Iterable[ToolHandler] = (),
        *,
        fallback: ToolCaller | None = None,
    ) -> None:
        self.workspace = Path(workspace).resolve()
        self._handlers: Dict[str, ToolHandler] = {}
        self._fallback = RemoteToolHandler(fallback) if fallback is not None else None
        for handler in handlers:
            self.register(handler)

    def register(self, handler: ToolHandler) -> None:
        if not handler.name:
            raise ValueError("tool handlers must declare a name")
        if handler.name in self._handlers:
            raise ValueError(f"tool {handler.name!r} is already registered")
        self._handlers[handler.name] = handler

    def names(self) -> List[str]:
        return list(self._handlers)

    def get(self, name: str) -> ToolHandler | None:
        return self._handlers.get(name)

    def specs(self) -> List[ToolSpec]:
        return [handler.spec() for handler in self._handlers.values()]

    def execute(self, call: ToolCall, cancel: "CancelToken | None" = None) -> str:
        """Run ``call`` and return its textual output or raise ToolExecutionError."""
        handler = self._handlers.get(call.tool_name)
        if handler is None:
            if self._fallback is None:
                raise ToolExecutionError(f"unknown tool: {call.tool_name}")
            LOGGER.debug("Routing %s to the remote tool bridge", call.tool_name)
            return self._fallback.invoke(call)

        context = ToolContext(workspace=self.workspace, cancel=cancel)
        arguments = handler.parse_arguments(call.arguments)
        return handler.run(arguments, context)


__all__ = [
    "RemoteToolHandler",
    "ToolCaller",
    "ToolContext",
    "ToolExecutionError",
    "ToolHandler",
    "ToolRegistry",
]
