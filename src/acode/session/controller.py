"""Turn loop that alternates model calls and tool executions for one session."""

from __future__ import annotations

import logging
import queue
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Iterable, List, Optional, Protocol, Sequence

from ..models.llm_client import (
    LLMClient,
    LLMClientError,
    LLMEvent,
    LLMEventKind,
    LLMResponseFormatError,
    LLMResult,
    LLMTransportError,
    Prompt,
    is_network_error,
)
from ..prompts import COMPACT_PROMPT, COMPACT_SUMMARY_PREFIX
from ..schema import ResponseItem, Role, ToolCall, ToolSpec
from ..tools.builtin import APPLY_PATCH_TOOL
from ..tools.patch import PatchRejectedError, parse_apply_patch_arguments
from ..tools.safety import ApprovalPolicy, PatchSafetyDecision, SafetyLevel, classify_patch
from .approval import ApprovalDecision, ApprovalGate
from .cancel import CancelToken, TurnCancelledError
from .events import Event, EventKind, EventSink, NullEventSink
from .history import ConversationHistory
from .resolver import ensure_call_ids, resolve_tool_calls

if TYPE_CHECKING:  # pragma: no cover
    from .history import SessionStore

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 10
DEFAULT_LLM_TIMEOUT = 120.0
TOOL_FAILURE_PREFIX = "Tool execution failed: "
USER_REJECTION_MESSAGE = "patch rejected by user"
MAX_STEPS_MESSAGE = "reached the maximum number of steps, stopping"
REPLY_PREVIEW_CHARS = 1024

_STREAM_POLL_INTERVAL = 0.05
_STREAM_END = object()


class SessionBusyError(RuntimeError):
    """Raised when a turn starts while another one is still running."""


class ToolExecutor(Protocol):
    """Runs tool calls that the model requests."""

    def execute(self, call: ToolCall, cancel: CancelToken | None = None) -> str:  # pragma: no cover - protocol
        ...

    def specs(self) -> List[ToolSpec]:  # pragma: no cover - protocol
        ...


class TurnStatus(str, Enum):
    DONE = "done"
    MAX_STEPS = "max_steps"


@dataclass(slots=True)
class TurnOutcome:
    """How a turn ended when it did not raise."""

    status: TurnStatus
    step: int
    final_message: str = ""


@dataclass(slots=True)
class SessionSettings:
    """Per-session knobs resolved from configuration."""

    max_steps: int = DEFAULT_MAX_STEPS
    approval_policy: ApprovalPolicy = ApprovalPolicy.AUTO
    llm_timeout: float = DEFAULT_LLM_TIMEOUT
    approval_timeout: Optional[float] = None

    def resolved_max_steps(self) -> int:
        return self.max_steps if self.max_steps > 0 else DEFAULT_MAX_STEPS


def new_session_id(now: datetime | None = None) -> str:
    """Return an id of the form ``YYYYMMDD-HHMMSS-NNNN``."""
    now = now or datetime.now()
    return f"{now.strftime('%Y%m%d-%H%M%S')}-{random.randrange(10000):04d}"


def preview_reply(text: str) -> str:
    """Truncate a model reply for logging."""
    if len(text) <= REPLY_PREVIEW_CHARS:
        return text
    return text[:REPLY_PREVIEW_CHARS] + "...(reply truncated)"


@dataclass(slots=True)
class _Turn:
    history: ConversationHistory
    cancel: CancelToken
    max_steps: int
    final_message: str = ""


class Session:
    """Conversation with a model that may read and edit the workspace.

    A session owns its history, its approval gate, and a busy flag so only
    one turn runs at a time. Each turn is bounded by ``settings.max_steps``
    model calls; tool failures are recorded for the model to react to while
    model failures and cancellation end the turn with an exception.
    """

    def __init__(
        self,
        client: LLMClient,
        executor: ToolExecutor,
        *,
        tools: Sequence[ToolSpec] | None = None,
        sink: EventSink | None = None,
        settings: SessionSettings | None = None,
        store: "SessionStore | None" = None,
        session_id: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.id = session_id or new_session_id()
        self.client = client
        self.executor = executor
        self.tools: List[ToolSpec] = list(tools) if tools is not None else list(executor.specs())
        self.sink: EventSink = sink or NullEventSink()
        self.settings = settings or SessionSettings()
        self.store = store
        self.logger = logger or LOGGER
        self.approvals = ApprovalGate()
        self._history = ConversationHistory()
        self._busy = threading.Lock()

    # ------------------------------------------------------------------
    # History management

    @property
    def history(self) -> List[ResponseItem]:
        return self._history.items()

    def reset_history(self, system_prompt: str = "") -> None:
        """Drop all history, seeding it with ``system_prompt`` when given."""
        items: List[ResponseItem] = []
        if system_prompt.strip():
            items.append(ResponseItem.message(Role.SYSTEM, system_prompt))
        self._history = ConversationHistory(items)

    def append_environment_context(self, text: str) -> None:
        if not text.strip():
            return
        self._history.record(ResponseItem.message(Role.USER, text))

    def load_history(self, session_id: str) -> None:
        """Replace history with a stored session and adopt its id."""
        if self.store is None:
            raise ValueError("no session store configured")
        items = self.store.load(session_id)
        self._history = ConversationHistory(items)
        self.id = session_id
        self.logger.info("Loaded session %s (items=%d)", session_id, len(items))

    def _commit(self, history: ConversationHistory) -> None:
        self._history = history
        if self.store is None:
            return
        try:
            self.store.save(self.id, history.items())
        except OSError as error:
            self.logger.warning("Failed to save session %s: %s", self.id, error)

    def compact_history(self, cancel: CancelToken | None = None) -> str:
        """Replace history with a model-written summary and return it."""
        if len(self._history) <= 2:
            return "History is too short to compact."
        if not self._busy.acquire(blocking=False):
            raise SessionBusyError(f"session {self.id} is busy")
        try:
            started = time.monotonic()
            items = self._history.items()
            self.logger.info("Compacting session %s (items=%d)", self.id, len(items))
            scratch = ConversationHistory(items)
            scratch.record(ResponseItem.message(Role.USER, COMPACT_PROMPT))
            prompt = Prompt(messages=scratch.build_messages(), items=scratch.items())
            result = self.client.complete(prompt, cancel=cancel)
            summary = result.content

            compacted: List[ResponseItem] = []
            if items and items[0].role is Role.SYSTEM:
                compacted.append(items[0])
            compacted.append(ResponseItem.message(Role.USER, COMPACT_SUMMARY_PREFIX + summary))
            self._commit(ConversationHistory(compacted))
            self.logger.info(
                "Compacted session %s summary_len=%d elapsed=%.2fs",
                self.id,
                len(summary),
                time.monotonic() - started,
            )
            return summary
        finally:
            self._busy.release()

    # ------------------------------------------------------------------
    # Approvals

    def submit_approval(self, decision: ApprovalDecision) -> bool:
        """Deliver an approval decision; mismatched request ids are discarded."""
        return self.approvals.submit(decision)

    # ------------------------------------------------------------------
    # Turn loop

    def run_turn(self, user_input: str, cancel: CancelToken | None = None) -> TurnOutcome:
        """Drive one user request to a final answer or the step limit."""
        if not self._busy.acquire(blocking=False):
            raise SessionBusyError(f"session {self.id} is already running a turn")
        turn = _Turn(
            history=ConversationHistory(self._history.items()),
            cancel=cancel or CancelToken(),
            max_steps=self.settings.resolved_max_steps(),
        )
        try:
            turn.history.record(ResponseItem.message(Role.USER, user_input))
            self.logger.info("New turn input=%r history_len=%d", user_input, len(self._history))
            self._emit(EventKind.TURN_STARTED)

            for step in range(turn.max_steps):
                turn.cancel.raise_if_cancelled()
                if self._run_step(turn, step):
                    return TurnOutcome(status=TurnStatus.DONE, step=step, final_message=turn.final_message)

            self._emit(EventKind.TURN_FINISHED, step=turn.max_steps, message=MAX_STEPS_MESSAGE)
            self.logger.info("Turn stopped after %d steps", turn.max_steps)
            return TurnOutcome(status=TurnStatus.MAX_STEPS, step=turn.max_steps, final_message=MAX_STEPS_MESSAGE)
        finally:
            self._commit(turn.history)
            self._busy.release()

    def _run_step(self, turn: _Turn, step: int) -> bool:
        self._emit(EventKind.AGENT_THINKING, step=step)
        prompt = Prompt(messages=turn.history.build_messages(), tools=list(self.tools), items=turn.history.items())
        result = self._call_llm(prompt, step, turn.cancel)

        reply = result.content
        self.logger.info("step=%d reply_len=%d tool_calls=%d", step, len(reply), len(result.tool_calls))
        self.logger.debug("step=%d reply preview:\n%s", step, preview_reply(reply))

        calls = ensure_call_ids(resolve_tool_calls(result, step), step)
        if reply.strip() or calls:
            turn.history.record(ResponseItem.message(Role.ASSISTANT, reply, calls))

        if not calls:
            turn.final_message = reply
            self._emit(EventKind.AGENT_TEXT_DONE, step=step, message=reply)
            self._emit(EventKind.TURN_FINISHED, step=step)
            return True

        self._emit(EventKind.TOOL_PLANNED, step=step, message=reply)
        self.logger.info("step=%d resolved %d tool calls", step, len(calls))
        for call in calls:
            turn.cancel.raise_if_cancelled()
            self._execute_call(turn, call, step)
        return False

    def _call_llm(self, prompt: Prompt, step: int, cancel: CancelToken) -> LLMResult:
        """Consume the model stream, forwarding text deltas as events.

        The stream runs on a worker thread so the wait stays bound to both
        ``cancel`` and the per-call timeout.
        """
        self.logger.info(
            "step=%d calling model (history_items=%d, prompt_msgs=%d)", step, len(prompt.items), len(prompt.messages)
        )
        call_cancel = CancelToken()
        events: "queue.Queue[object]" = queue.Queue()

        def pump() -> None:
            try:
                for event in self.client.stream(prompt, cancel=call_cancel):
                    events.put(event)
            except Exception as error:  # noqa: BLE001 - handed to the consuming thread
                events.put(LLMEvent(kind=LLMEventKind.ERROR, error=error))
            finally:
                events.put(_STREAM_END)

        worker = threading.Thread(target=pump, name=f"acode-llm-{self.id}-{step}", daemon=True)
        worker.start()

        timeout = self.settings.llm_timeout
        deadline = time.monotonic() + timeout if timeout and timeout > 0 else None
        final: LLMResult | None = None
        failure: BaseException | None = None
        while True:
            if cancel.cancelled:
                call_cancel.cancel(cancel.reason)
                raise TurnCancelledError(cancel.reason)
            if deadline is not None and time.monotonic() >= deadline:
                call_cancel.cancel("model call timed out")
                raise LLMTransportError(f"model call timed out after {timeout:.0f}s", network=True)
            try:
                item = events.get(timeout=_STREAM_POLL_INTERVAL)
            except queue.Empty:
                continue
            if item is _STREAM_END:
                break
            if not isinstance(item, LLMEvent):
                continue
            if item.kind is LLMEventKind.TEXT_DELTA and item.text:
                self._emit(EventKind.AGENT_TEXT_DELTA, step=step, message=item.text)
            elif item.kind is LLMEventKind.ERROR:
                failure = item.error
            elif item.kind is LLMEventKind.COMPLETED:
                final = item.result

        if failure is not None:
            self.logger.error("step=%d model error (network=%s): %s", step, is_network_error(failure), failure)
            if isinstance(failure, TurnCancelledError) and cancel.cancelled:
                raise failure
            if isinstance(failure, LLMClientError):
                raise failure
            raise LLMClientError(f"model call failed: {failure}") from failure
        if final is None:
            raise LLMResponseFormatError("model stream completed without a result")
        return final

    def _execute_call(self, turn: _Turn, call: ToolCall, step: int) -> None:
        self.logger.info("step=%d executing tool=%s", step, call.tool_name)
        try:
            if call.tool_name == APPLY_PATCH_TOOL:
                output = self._execute_patch(call, step, turn.cancel)
            else:
                output = self._run_tool(call, step, turn.cancel)
        except TurnCancelledError:
            raise
        except Exception as error:  # noqa: BLE001 - tool failures are recorded for the model
            message = f"{TOOL_FAILURE_PREFIX}{error}"
            self._emit(EventKind.TOOL_FINISHED, step=step, tool_name=call.tool_name, message=message)
            self.logger.warning("step=%d tool=%s error=%s", step, call.tool_name, error)
            turn.history.record(ResponseItem.tool_result(call.tool_name, message, call.call_id))
            return

        self._emit(EventKind.TOOL_OUTPUT_DELTA, step=step, tool_name=call.tool_name, message=output)
        self._emit(EventKind.TOOL_FINISHED, step=step, tool_name=call.tool_name)
        self.logger.info("step=%d tool=%s done output_len=%d", step, call.tool_name, len(output))
        turn.history.record(ResponseItem.tool_result(call.tool_name, output, call.call_id))

    def _run_tool(self, call: ToolCall, step: int, cancel: CancelToken) -> str:
        self._emit(EventKind.TOOL_STARTED, step=step, tool_name=call.tool_name)
        return self.executor.execute(call, cancel)

    def _execute_patch(self, call: ToolCall, step: int, cancel: CancelToken) -> str:
        """Classify a patch and only run it once it is safe or approved."""
        request = parse_apply_patch_arguments(call.arguments)
        decision = classify_patch(request.summary, self.settings.approval_policy)
        self.logger.info("step=%d patch decision=%s paths=%s", step, decision.level.value, decision.paths)

        if decision.level is SafetyLevel.REJECT:
            raise PatchRejectedError(decision.reason or "refused by safety policy")
        if decision.level is SafetyLevel.ASK_USER:
            self._await_approval(call, step, decision, cancel)
        return self._run_tool(call, step, cancel)

    def _await_approval(self, call: ToolCall, step: int, decision: PatchSafetyDecision, cancel: CancelToken) -> None:
        request_id = self.approvals.new_request_id(step)
        self.approvals.register(request_id)
        self._emit(
            EventKind.PATCH_APPROVAL_REQUEST,
            step=step,
            tool_name=call.tool_name,
            request_id=request_id,
            paths=list(decision.paths),
            message=decision.reason,
        )
        approved = self.approvals.wait(request_id, cancel, timeout=self.settings.approval_timeout)
        self._emit(
            EventKind.PATCH_APPROVAL_RESULT,
            step=step,
            tool_name=call.tool_name,
            request_id=request_id,
            approved=approved,
            message="patch approved" if approved else USER_REJECTION_MESSAGE,
        )
        if not approved:
            raise PatchRejectedError("rejected by user", message=USER_REJECTION_MESSAGE)

    def _emit(
        self,
        kind: EventKind,
        *,
        step: int = 0,
        tool_name: str = "",
        message: str = "",
        request_id: str = "",
        paths: Iterable[str] = (),
        approved: bool | None = None,
    ) -> None:
        self.sink.send(
            Event(
                kind=kind,
                step=step,
                tool_name=tool_name,
                message=message,
                request_id=request_id,
                paths=list(paths),
                approved=approved,
            )
        )


__all__ = [
    "APPLY_PATCH_TOOL",
    "DEFAULT_MAX_STEPS",
    "MAX_STEPS_MESSAGE",
    "Session",
    "SessionBusyError",
    "SessionSettings",
    "ToolExecutor",
    "TurnOutcome",
    "TurnStatus",
    "USER_REJECTION_MESSAGE",
    "new_session_id",
    "preview_reply",
]
