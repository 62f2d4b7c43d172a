"""Approval gates: tasks that run no code and block on an external decision."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from checkpoint_orchestrator.errors import (
    ApprovalTimeoutError,
    GateNotPendingError,
    ValidationError,
)
from checkpoint_orchestrator.workflow.model import (
    ApprovalDecision,
    DecisionRecord,
    GateParameters,
    utc_now,
)

logger = logging.getLogger(__name__)

_WAKE_INTERVAL_SECONDS = 0.1


@dataclass
class _PendingGate:
    params: GateParameters
    opened_at: float
    decision: DecisionRecord | None = None


class ApprovalGateController:
    """Holds open gates and hands decisions from submitters to the waiting runner.

    `submit()` may be called from any thread. `wait()` is called from the
    runner's control thread and returns once a decision is recorded, the
    timeout applies the default, or the cancel event fires (returns None).
    """

    def __init__(self, *, seconds_per_minute: float = 60.0) -> None:
        if seconds_per_minute <= 0:
            raise ValueError("seconds_per_minute must be > 0")
        self.seconds_per_minute = seconds_per_minute
        self._cond = threading.Condition()
        self._pending: dict[str, _PendingGate] = {}

    def open(self, name: str, params: GateParameters) -> None:
        with self._cond:
            self._pending[name] = _PendingGate(params=params, opened_at=time.monotonic())
        logger.info(
            "Approval gate opened",
            extra={"task": name, "timeout_minutes": params.timeout_minutes},
        )

    def is_pending(self, name: str) -> bool:
        with self._cond:
            gate = self._pending.get(name)
            return gate is not None and gate.decision is None

    def pending(self) -> list[str]:
        with self._cond:
            return [name for name, gate in self._pending.items() if gate.decision is None]

    def parameters(self, name: str) -> GateParameters:
        with self._cond:
            gate = self._pending.get(name)
            if gate is None:
                raise GateNotPendingError(f"Task '{name}' is not awaiting approval")
            return gate.params

    def submit(self, name: str, decision: ApprovalDecision) -> DecisionRecord:
        """Record a decision for a pending gate.

        Raises `GateNotPendingError` if the gate is not waiting, and
        `ValidationError` when a mandatory reason is missing; in the latter
        case the gate stays pending.
        """

        reason = (decision.reason or "").strip() or None
        with self._cond:
            gate = self._pending.get(name)
            if gate is None or gate.decision is not None:
                raise GateNotPendingError(f"Task '{name}' is not awaiting approval")
            if gate.params.require_reason and reason is None:
                raise ValidationError(f"A reason is required to decide '{name}'")
            record = DecisionRecord(action=decision.action, reason=reason, decided_at=utc_now())
            gate.decision = record
            self._cond.notify_all()

        logger.info(
            "Approval decision submitted",
            extra={"task": name, "action": record.action.value},
        )
        return record

    def wait(self, name: str, cancel_event: threading.Event) -> DecisionRecord | None:
        with self._cond:
            gate = self._pending.get(name)
            if gate is None:
                raise GateNotPendingError(f"Task '{name}' was never opened")

        try:
            return self._wait_for_decision(name, gate, cancel_event)
        except ApprovalTimeoutError as e:
            return self._apply_default(name, gate, e)
        finally:
            with self._cond:
                self._pending.pop(name, None)

    def interrupt(self) -> None:
        """Wake any waiter so it re-checks its cancel event."""

        with self._cond:
            self._cond.notify_all()

    def _wait_for_decision(
        self, name: str, gate: _PendingGate, cancel_event: threading.Event
    ) -> DecisionRecord | None:
        params = gate.params
        deadline = (
            gate.opened_at + params.timeout_minutes * self.seconds_per_minute
            if params.has_timeout
            else None
        )
        with self._cond:
            while gate.decision is None:
                if cancel_event.is_set():
                    logger.info("Approval wait interrupted", extra={"task": name})
                    return None
                wake = _WAKE_INTERVAL_SECONDS
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise ApprovalTimeoutError(name, params.timeout_minutes)
                    wake = min(wake, remaining)
                self._cond.wait(wake)
            return gate.decision

    def _apply_default(
        self, name: str, gate: _PendingGate, error: ApprovalTimeoutError
    ) -> DecisionRecord:
        action = gate.params.default_timeout_action
        # Registry validation guarantees a default whenever a timeout is set.
        assert action is not None
        with self._cond:
            # A decision may have landed between the deadline check and here.
            if gate.decision is not None:
                return gate.decision
            record = DecisionRecord(
                action=action,
                reason=(
                    f"Timed out after {error.timeout_minutes:g} minute(s); "
                    f"default action '{action.value}' applied"
                ),
                decided_at=utc_now(),
                timed_out=True,
            )
            gate.decision = record
        logger.warning(
            "Approval gate timed out; applying default",
            extra={"task": name, "action": action.value},
        )
        return record
