"""Task descriptor registry.

The registry is the registration interface consumed from the declaration layer:
an ordered list of descriptors submitted once before the run starts.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from checkpoint_orchestrator.errors import ValidationError
from checkpoint_orchestrator.workflow.model import (
    FailurePolicy,
    TaskDescriptor,
    TaskKind,
    WorkflowRuntime,
)

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Ordered, validated collection of task descriptors.

    Ordering is by `order`, ties broken by declaration sequence (Python's sort
    is stable). Once frozen, no further registration is accepted.

    `default_failure_policy` applies to every task that does not declare its
    own `failure_policy`.
    """

    def __init__(
        self,
        workflow_id: str,
        descriptors: Iterable[TaskDescriptor] = (),
        *,
        default_failure_policy: FailurePolicy = FailurePolicy.ABORT,
    ) -> None:
        if not workflow_id.strip():
            raise ValidationError("Workflow identity must not be empty")
        self.workflow_id = workflow_id
        self.default_failure_policy = FailurePolicy(default_failure_policy)
        self._declared: list[TaskDescriptor] = []
        self._frozen = False
        for descriptor in descriptors:
            self.register(descriptor)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, descriptor: TaskDescriptor) -> None:
        if self._frozen:
            raise ValidationError(
                f"Cannot register '{descriptor.name}': the task list is frozen once the run starts"
            )
        _validate_descriptor(descriptor)
        if any(existing.name == descriptor.name for existing in self._declared):
            raise ValidationError(f"Duplicate task name: {descriptor.name!r}")
        self._declared.append(descriptor)
        logger.debug(
            "Task registered",
            extra={"workflow_id": self.workflow_id, "task": descriptor.name},
        )

    def freeze(self) -> None:
        if not self._declared:
            raise ValidationError("A workflow needs at least one task")
        self._frozen = True

    def ordered(self) -> list[TaskDescriptor]:
        return sorted(self._declared, key=lambda d: d.order)

    def names(self) -> list[str]:
        return [d.name for d in self.ordered()]

    def get(self, name: str) -> TaskDescriptor:
        for descriptor in self._declared:
            if descriptor.name == name:
                return descriptor
        raise KeyError(name)

    def policy_for(self, descriptor: TaskDescriptor) -> FailurePolicy:
        return descriptor.failure_policy or self.default_failure_policy

    def new_runtime(self, inputs: Mapping[str, Any] | None = None) -> WorkflowRuntime:
        return WorkflowRuntime.fresh(self.workflow_id, self.ordered(), inputs)

    def __len__(self) -> int:
        return len(self._declared)

    def __iter__(self) -> Iterator[TaskDescriptor]:
        return iter(self.ordered())

    def __getitem__(self, index: int) -> TaskDescriptor:
        return self.ordered()[index]


def _validate_descriptor(descriptor: TaskDescriptor) -> None:
    name = descriptor.name
    if not name or not name.strip():
        raise ValidationError("Task name must not be empty")
    if name != name.strip():
        raise ValidationError(f"Task name has surrounding whitespace: {name!r}")
    if descriptor.retry_count < 0:
        raise ValidationError(f"Task '{name}': retry_count must be >= 0")
    if descriptor.retry_delay_seconds < 0:
        raise ValidationError(f"Task '{name}': retry_delay_seconds must be >= 0")
    if descriptor.timeout_seconds < 0:
        raise ValidationError(f"Task '{name}': timeout_seconds must be >= 0")

    if descriptor.kind is TaskKind.NORMAL:
        if descriptor.body is None or not callable(descriptor.body):
            raise ValidationError(f"Task '{name}' needs a callable body")
        if descriptor.gate is not None:
            raise ValidationError(f"Task '{name}' is a normal task but declares gate parameters")
        return

    gate = descriptor.gate
    if gate is None:
        raise ValidationError(f"Approval gate '{name}' is missing its gate parameters")
    if descriptor.body is not None:
        raise ValidationError(f"Approval gate '{name}' must not declare a body")
    if not gate.message.strip():
        raise ValidationError(f"Approval gate '{name}' needs a message")
    if gate.timeout_minutes < 0:
        raise ValidationError(f"Approval gate '{name}': timeout_minutes must be >= 0")
    if gate.has_timeout and gate.default_timeout_action is None:
        raise ValidationError(
            f"Approval gate '{name}' has a timeout but no default_timeout_action"
        )
