"""Client for OpenAI-compatible Chat Completions endpoints with function calling."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, List, Optional

from ..schema import Message, Role, ToolCall, ToolSpec
from ..utils.json_repair import JSONRepairError, loads_lenient
from .llm_client import LLMClient, LLMResponseFormatError, LLMResult, LLMTransportError, Prompt, is_network_error

__all__ = ["ChatCompletionsClient"]

LOGGER = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], str]


class ChatCompletionsClient(LLMClient):
    """Thin adapter around the ``/chat/completions`` API."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4.1-mini",
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        temperature: float | None = None,
    ) -> None:
        super().__init__(model=model, timeout=timeout)
        self._api_key = api_key or os.getenv("ACODE_API_KEY") or os.getenv("OPENAI_API_KEY")
        self._base_url = base_url.rstrip("/")
        self._temperature = temperature
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    @property
    def endpoint(self) -> str:
        if self._base_url.endswith("/chat/completions"):
            return self._base_url
        return f"{self._base_url}/chat/completions"

    def build_payload(self, prompt: Prompt) -> Dict[str, Any]:
        """Render a transport-ready request body."""
        payload: Dict[str, Any] = {
            "model": self._model,
            "messages": [_render_message(message) for message in prompt.messages],
        }
        if prompt.tools:
            payload["tools"] = [_render_tool(spec) for spec in prompt.tools]
        if self._temperature is not None:
            payload["temperature"] = self._temperature
        return payload

    def _raw_complete(self, prompt: Prompt) -> LLMResult:
        payload = self.build_payload(prompt)
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except Exception as error:  # pragma: no cover
            raise LLMTransportError(
                f"Transport rejected the request: {error}",
                network=is_network_error(error),
            ) from error
        return self._parse_response(raw_response)

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport built on ``urllib``."""
        import urllib.error
        import urllib.request

        if os.getenv("ACODE_DEBUG_PAYLOAD"):
            LOGGER.debug("chat request payload:\n%s", json.dumps(payload, indent=2, sort_keys=True))

        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self.endpoint,
            data=data,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Model response timed out.", network=True) from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach model endpoint: {error.reason}", network=True) from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}")

        return raw.decode("utf-8")

    @staticmethod
    def _parse_response(raw_response: str) -> LLMResult:
        """Extract the first choice's text and tool calls."""
        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError as error:
            raise LLMResponseFormatError(f"Model returned invalid JSON: {raw_response[:200]}") from error

        if not isinstance(data, dict):
            raise LLMResponseFormatError("Chat response must be a JSON object.")
        if isinstance(data.get("error"), dict):
            message = data["error"].get("message") or "unknown error"
            raise LLMTransportError(f"Model endpoint returned an error: {message}")

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise LLMResponseFormatError("Chat response contained no choices.")
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if not isinstance(message, dict):
            raise LLMResponseFormatError("Chat response choice has no message.")

        content = message.get("content")
        text = content if isinstance(content, str) else ""
        return LLMResult(content=text, tool_calls=_extract_tool_calls(message.get("tool_calls")))


def _decode_arguments(raw: Any) -> Any:
    if not isinstance(raw, str):
        return raw
    if not raw.strip():
        return {}
    try:
        return loads_lenient(raw)
    except JSONRepairError:
        # Custom tools (such as apply_patch) may receive free-form text.
        return raw


def _extract_tool_calls(entries: Any) -> List[ToolCall]:
    calls: List[ToolCall] = []
    if not isinstance(entries, list):
        return calls
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        function = entry.get("function")
        if not isinstance(function, dict):
            continue
        name = function.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        calls.append(
            ToolCall(
                tool_name=name.strip(),
                arguments=_decode_arguments(function.get("arguments")),
                call_id=str(entry.get("id") or ""),
            )
        )
    return calls


def _render_arguments(arguments: Any) -> str:
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments if arguments is not None else {}, ensure_ascii=False)


def _render_message(message: Message) -> Dict[str, Any]:
    rendered: Dict[str, Any] = {"role": message.role.value, "content": message.content}
    if message.role is Role.TOOL:
        if message.tool_call_id:
            rendered["tool_call_id"] = message.tool_call_id
        if message.name:
            rendered["name"] = message.name
    if message.tool_calls:
        rendered["tool_calls"] = [
            {
                "id": call.call_id,
                "type": "function",
                "function": {"name": call.tool_name, "arguments": _render_arguments(call.arguments)},
            }
            for call in message.tool_calls
        ]
    return rendered


def _render_tool(spec: ToolSpec) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": spec.name,
            "description": spec.description,
            "parameters": spec.parameters or {"type": "object", "properties": {}},
        },
    }
