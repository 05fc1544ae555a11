"""Cooperative cancellation shared by the turn loop and its blocking waits."""

from __future__ import annotations

import threading


class TurnCancelledError(RuntimeError):
    """Raised when a caller cancels a running turn."""


class CancelToken:
    """Thread-safe one-shot cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = "turn cancelled"

    def cancel(self, reason: str | None = None) -> None:
        if reason:
            self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; return the flag."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelledError(self._reason)


__all__ = ["CancelToken", "TurnCancelledError"]
