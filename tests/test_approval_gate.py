from __future__ import annotations

import threading
import time

import pytest

from acode.session.approval import ApprovalDecision, ApprovalGate, ApprovalTimeoutError
from acode.session.cancel import CancelToken, TurnCancelledError


def _wait_in_thread(gate: ApprovalGate, request_id: str, cancel: CancelToken | None = None):
    results: list[object] = []

    def target() -> None:
        try:
            results.append(gate.wait(request_id, cancel, timeout=5))
        except Exception as error:  # noqa: BLE001
            results.append(error)

    thread = threading.Thread(target=target)
    thread.start()
    return thread, results


def test_mismatched_decision_does_not_unblock() -> None:
    gate = ApprovalGate()
    gate.register("patch-1")
    thread, results = _wait_in_thread(gate, "patch-1")

    assert gate.submit(ApprovalDecision(request_id="patch-other", approved=True)) is False
    time.sleep(0.2)
    assert thread.is_alive()
    assert results == []

    assert gate.submit(ApprovalDecision(request_id="patch-1", approved=False)) is True
    thread.join(timeout=2)
    assert results == [False]


def test_matching_decision_resolves_exactly_once() -> None:
    gate = ApprovalGate()
    gate.register("patch-2")

    assert gate.submit(ApprovalDecision(request_id="patch-2", approved=True)) is True
    assert gate.submit(ApprovalDecision(request_id="patch-2", approved=False)) is False
    assert gate.wait("patch-2") is True
    assert gate.pending() == []


def test_cancellation_aborts_the_wait() -> None:
    gate = ApprovalGate()
    gate.register("patch-3")
    cancel = CancelToken()
    thread, results = _wait_in_thread(gate, "patch-3", cancel)

    cancel.cancel("user pressed ctrl-c")
    thread.join(timeout=2)

    assert len(results) == 1
    assert isinstance(results[0], TurnCancelledError)
    assert "ctrl-c" in str(results[0])
    assert gate.pending() == []


def test_wait_times_out() -> None:
    gate = ApprovalGate()
    gate.register("patch-4")

    with pytest.raises(ApprovalTimeoutError):
        gate.wait("patch-4", timeout=0.1)


def test_wait_requires_registration_and_ids_are_unique() -> None:
    gate = ApprovalGate()

    with pytest.raises(KeyError):
        gate.wait("never-registered")

    ids = {gate.new_request_id(step=1) for _ in range(50)}
    assert len(ids) == 50
    assert all(request_id.startswith("patch-") and "-1-" in request_id for request_id in ids)

    gate.register("dup")
    with pytest.raises(ValueError):
        gate.register("dup")
