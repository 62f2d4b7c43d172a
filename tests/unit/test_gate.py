"""Unit tests for the approval gate controller."""

from __future__ import annotations

import threading

import pytest

from checkpoint_orchestrator.errors import GateNotPendingError, ValidationError
from checkpoint_orchestrator.workflow.gate import ApprovalGateController
from checkpoint_orchestrator.workflow.model import (
    ApprovalAction,
    ApprovalDecision,
    GateParameters,
)


def _gates() -> ApprovalGateController:
    return ApprovalGateController(seconds_per_minute=0.1)


def test_decision_from_another_thread_releases_wait() -> None:
    gates = _gates()
    gates.open("approve", GateParameters(message="Deploy?"))
    assert gates.pending() == ["approve"]

    threading.Timer(
        0.05,
        gates.submit,
        args=("approve", ApprovalDecision(action=ApprovalAction.APPROVED, reason=" fine ")),
    ).start()
    record = gates.wait("approve", threading.Event())

    assert record is not None
    assert record.action is ApprovalAction.APPROVED
    assert record.reason == "fine"
    assert not record.timed_out
    assert gates.pending() == []


def test_submit_for_unknown_gate_is_rejected() -> None:
    with pytest.raises(GateNotPendingError):
        _gates().submit("nope", ApprovalDecision(action=ApprovalAction.APPROVED))


def test_second_decision_is_rejected() -> None:
    gates = _gates()
    gates.open("approve", GateParameters(message="Deploy?"))
    gates.submit("approve", ApprovalDecision(action=ApprovalAction.REJECTED))

    with pytest.raises(GateNotPendingError):
        gates.submit("approve", ApprovalDecision(action=ApprovalAction.APPROVED))


def test_mandatory_reason_keeps_gate_pending() -> None:
    gates = _gates()
    gates.open("approve", GateParameters(message="Deploy?", require_reason=True))

    with pytest.raises(ValidationError):
        gates.submit("approve", ApprovalDecision(action=ApprovalAction.APPROVED, reason="   "))
    assert gates.is_pending("approve")

    record = gates.submit("approve", ApprovalDecision(action=ApprovalAction.APPROVED, reason="ok"))
    assert record.reason == "ok"


def test_timeout_applies_default_action() -> None:
    gates = _gates()
    gates.open(
        "approve",
        GateParameters(
            message="Deploy?",
            timeout_minutes=1,
            default_timeout_action=ApprovalAction.REJECTED,
        ),
    )

    record = gates.wait("approve", threading.Event())

    assert record is not None
    assert record.action is ApprovalAction.REJECTED
    assert record.timed_out
    assert record.reason is not None and "Timed out after 1 minute(s)" in record.reason
    assert "rejected" in record.reason


def test_cancel_interrupts_wait() -> None:
    gates = _gates()
    gates.open("approve", GateParameters(message="Deploy?"))
    cancel = threading.Event()

    def fire() -> None:
        cancel.set()
        gates.interrupt()

    threading.Timer(0.05, fire).start()

    assert gates.wait("approve", cancel) is None
    assert not gates.is_pending("approve")
