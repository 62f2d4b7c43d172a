"""Error taxonomy for the orchestration core.

Every error raised on purpose by this package derives from `WorkflowError`, so
callers can catch the whole family in one place. `IllegalTransitionError` is the
one exception: it lives next to the transition tables in
`checkpoint_orchestrator.workflow.state_machine`.
"""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for orchestration errors."""


class ValidationError(WorkflowError, ValueError):
    """Rejected input: bad registration, bad decision, or non-JSON result value."""


class ExecutionError(WorkflowError):
    """A task body failed.

    The runner records this on the task's runtime state; it only propagates as
    a run failure when the task's failure policy is `abort`.
    """

    def __init__(self, task_name: str, message: str) -> None:
        super().__init__(message)
        self.task_name = task_name


class TaskTimeoutError(ExecutionError):
    """A task attempt exceeded its configured timeout."""


class TaskCancelledError(WorkflowError):
    """Raised inside a task body by `TaskContext.raise_if_cancelled()`."""


class StateCorruptionError(WorkflowError):
    """A persisted checkpoint failed verification, decryption or decoding.

    Resume must be refused. The caller decides whether to discard the
    checkpoint or escalate.
    """


class SnapshotFormatError(StateCorruptionError):
    """The decrypted document does not match a supported snapshot schema."""


class StateLockError(WorkflowError):
    """Another writer holds the checkpoint lock."""


class ReconciliationError(WorkflowError):
    """A loaded snapshot cannot be matched against the declared tasks."""


class GateNotPendingError(WorkflowError, LookupError):
    """A decision was submitted for a gate that is not awaiting approval."""


class ApprovalTimeoutError(WorkflowError):
    """No decision arrived before the gate's timeout.

    Internal to the gate controller, which folds it into the configured
    default outcome.
    """

    def __init__(self, task_name: str, timeout_minutes: float) -> None:
        super().__init__(f"No decision for '{task_name}' within {timeout_minutes:g} minute(s)")
        self.task_name = task_name
        self.timeout_minutes = timeout_minutes
