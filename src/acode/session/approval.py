"""Rendezvous between a running turn and whoever approves risky patches."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

from .cancel import CancelToken, TurnCancelledError

LOGGER = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05


@dataclass(slots=True, frozen=True)
class ApprovalDecision:
    """Answer to a pending approval request."""

    request_id: str
    approved: bool


class ApprovalTimeoutError(RuntimeError):
    """Raised when no decision arrives within the allotted time."""


class _Waiter:
    __slots__ = ("event", "approved")

    def __init__(self) -> None:
        self.event = threading.Event()
        self.approved: Optional[bool] = None


class ApprovalGate:
    """Keyed map of pending approvals.

    ``register`` opens a slot for a request id, ``submit`` resolves only the
    slot whose id matches, and ``wait`` blocks the turn until that happens or
    the turn is cancelled. Decisions for unknown or already resolved ids are
    discarded.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._waiters: Dict[str, _Waiter] = {}
        self._counter = itertools.count(1)

    def new_request_id(self, step: int) -> str:
        """Return an id unique within this gate, derived from time and step."""
        return f"patch-{time.time_ns()}-{step}-{next(self._counter)}"

    def register(self, request_id: str) -> None:
        with self._lock:
            if request_id in self._waiters:
                raise ValueError(f"approval request {request_id!r} is already pending")
            self._waiters[request_id] = _Waiter()

    def pending(self) -> list[str]:
        with self._lock:
            return [key for key, waiter in self._waiters.items() if not waiter.event.is_set()]

    def submit(self, decision: ApprovalDecision) -> bool:
        """Deliver ``decision``; return True when it resolved a pending request."""
        with self._lock:
            waiter = self._waiters.get(decision.request_id)
            if waiter is None or waiter.event.is_set():
                LOGGER.debug("Discarding approval for unknown request %s", decision.request_id)
                return False
            waiter.approved = decision.approved
            waiter.event.set()
            return True

    def wait(
        self,
        request_id: str,
        cancel: CancelToken | None = None,
        *,
        timeout: float | None = None,
    ) -> bool:
        """Block until the request is decided and return the verdict.

        Raises :class:`TurnCancelledError` when ``cancel`` fires first and
        :class:`ApprovalTimeoutError` when ``timeout`` elapses.
        """
        with self._lock:
            waiter = self._waiters.get(request_id)
        if waiter is None:
            raise KeyError(f"approval request {request_id!r} is not registered")

        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            while True:
                if cancel is not None and cancel.cancelled:
                    raise TurnCancelledError(cancel.reason)
                interval = _POLL_INTERVAL
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise ApprovalTimeoutError(f"no decision for approval request {request_id}")
                    interval = min(interval, remaining)
                if waiter.event.wait(interval):
                    return bool(waiter.approved)
        finally:
            with self._lock:
                self._waiters.pop(request_id, None)


__all__ = ["ApprovalDecision", "ApprovalGate", "ApprovalTimeoutError"]
