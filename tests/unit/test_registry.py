"""Unit tests for descriptor registration and ordering."""

from __future__ import annotations

import pytest

from checkpoint_orchestrator.errors import ValidationError
from checkpoint_orchestrator.workflow.model import (
    ApprovalAction,
    FailurePolicy,
    GateParameters,
    TaskDescriptor,
    TaskKind,
    TaskStatus,
)
from checkpoint_orchestrator.workflow.registry import TaskRegistry


def _noop(ctx):  # type: ignore[no-untyped-def]
    return None


def test_ordering_is_by_order_then_declaration() -> None:
    registry = TaskRegistry(
        "wf",
        [
            TaskDescriptor.task("zeta", _noop, order=1),
            TaskDescriptor.task("alpha", _noop, order=1),
            TaskDescriptor.task("first", _noop, order=0),
        ],
    )

    assert registry.names() == ["first", "zeta", "alpha"]
    assert registry[0].name == "first"
    assert len(registry) == 3


def test_duplicate_names_are_rejected() -> None:
    registry = TaskRegistry("wf", [TaskDescriptor.task("a", _noop)])
    with pytest.raises(ValidationError, match="Duplicate"):
        registry.register(TaskDescriptor.task("a", _noop))


@pytest.mark.parametrize(
    "descriptor",
    [
        TaskDescriptor.task("", _noop),
        TaskDescriptor.task(" padded ", _noop),
        TaskDescriptor.task("neg-retry", _noop, retry_count=-1),
        TaskDescriptor.task("neg-timeout", _noop, timeout_seconds=-1),
        TaskDescriptor(name="no-body", title="no body"),
        TaskDescriptor.approval_gate("empty-message", "  "),
        TaskDescriptor.approval_gate("no-default", "Go?", timeout_minutes=5),
        TaskDescriptor(name="gate-no-params", title="x", kind=TaskKind.APPROVAL_GATE),
        TaskDescriptor(
            name="gate-with-body",
            title="x",
            kind=TaskKind.APPROVAL_GATE,
            body=_noop,
            gate=GateParameters(message="Go?"),
        ),
    ],
)
def test_invalid_descriptors_are_rejected(descriptor: TaskDescriptor) -> None:
    with pytest.raises(ValidationError):
        TaskRegistry("wf", [descriptor])


def test_gate_with_timeout_and_default_is_accepted() -> None:
    gate = TaskDescriptor.approval_gate(
        "approve", "Go?", timeout_minutes=1, default_timeout_action=ApprovalAction.APPROVED
    )
    registry = TaskRegistry("wf", [gate])
    assert registry.get("approve").gate is not None
    assert registry.get("approve").title == "approve"


def test_frozen_registry_rejects_registration() -> None:
    registry = TaskRegistry("wf", [TaskDescriptor.task("a", _noop)])
    registry.freeze()
    with pytest.raises(ValidationError, match="frozen"):
        registry.register(TaskDescriptor.task("b", _noop))


def test_empty_registry_cannot_be_frozen() -> None:
    with pytest.raises(ValidationError):
        TaskRegistry("wf").freeze()


def test_new_runtime_mirrors_declared_order() -> None:
    registry = TaskRegistry(
        "wf", [TaskDescriptor.task("b", _noop, order=2), TaskDescriptor.task("a", _noop, order=1)]
    )
    runtime = registry.new_runtime({"env": "prod"})

    assert [t.name for t in runtime.tasks] == ["a", "b"]
    assert all(t.status is TaskStatus.NOT_STARTED for t in runtime.tasks)
    assert runtime.inputs == {"env": "prod"}


def test_tasks_without_a_policy_use_the_registry_default() -> None:
    explicit = TaskDescriptor.task("explicit", _noop, failure_policy=FailurePolicy.ABORT)
    implicit = TaskDescriptor.task("implicit", _noop)

    lenient = TaskRegistry(
        "wf", [explicit, implicit], default_failure_policy=FailurePolicy.CONTINUE
    )
    strict = TaskRegistry("wf", [explicit, implicit])

    assert lenient.default_failure_policy is FailurePolicy.CONTINUE
    assert lenient.policy_for(implicit) is FailurePolicy.CONTINUE
    assert lenient.policy_for(explicit) is FailurePolicy.ABORT
    assert strict.policy_for(implicit) is FailurePolicy.ABORT
