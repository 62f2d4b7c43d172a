from __future__ import annotations

from checkpoint_orchestrator.workflow.model import (
    FailurePolicy,
    TaskStatus,
    WorkflowStatus,
)

ALLOWED_TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.NOT_STARTED: {TaskStatus.RUNNING},
    TaskStatus.RUNNING: {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.SKIPPED,
        TaskStatus.PENDING_REBOOT,
        TaskStatus.AWAITING_APPROVAL,
    },
    TaskStatus.AWAITING_APPROVAL: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    # A suspended task re-executes from its start.
    TaskStatus.PENDING_REBOOT: {TaskStatus.RUNNING},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.SKIPPED: set(),
}

ALLOWED_WORKFLOW_TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.NOT_STARTED: {
        WorkflowStatus.RUNNING,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.CANCELLED,
    },
    WorkflowStatus.RUNNING: {
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED,
    },
    WorkflowStatus.COMPLETED: set(),
    WorkflowStatus.FAILED: set(),
    WorkflowStatus.CANCELLED: set(),
}

TERMINAL_TASK_STATUSES: frozenset[TaskStatus] = frozenset(
    status for status, targets in ALLOWED_TASK_TRANSITIONS.items() if not targets
)
TERMINAL_WORKFLOW_STATUSES: frozenset[WorkflowStatus] = frozenset(
    status for status, targets in ALLOWED_WORKFLOW_TRANSITIONS.items() if not targets
)


class IllegalTransitionError(ValueError):
    pass


def transition_task(*, current: TaskStatus, to: TaskStatus) -> TaskStatus:
    allowed = ALLOWED_TASK_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal task transition: {current.value} -> {to.value}")
    return to


def transition_workflow(*, current: WorkflowStatus, to: WorkflowStatus) -> WorkflowStatus:
    allowed = ALLOWED_WORKFLOW_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(
            f"Illegal workflow transition: {current.value} -> {to.value}"
        )
    return to


def is_continuation_eligible(status: TaskStatus, policy: FailurePolicy) -> bool:
    """Whether the runner may move past a task that ended in `status`."""

    if status in (TaskStatus.COMPLETED, TaskStatus.SKIPPED):
        return True
    return status is TaskStatus.FAILED and policy is FailurePolicy.CONTINUE
