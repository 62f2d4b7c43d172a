"""Domain records for workflows, tasks and checkpoints.

Descriptors are frozen and describe what to run. Runtime states are mutable and
only live for one process; their durable image is the `Snapshot`.
"""

from __future__ import annotations

import copy
import getpass
import socket
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from checkpoint_orchestrator.workflow.context import TaskContext

SCHEMA_VERSION = 1


def utc_now() -> datetime:
    return datetime.now(UTC)


class TaskStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    PENDING_REBOOT = "pending_reboot"
    AWAITING_APPROVAL = "awaiting_approval"


class WorkflowStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskKind(str, Enum):
    NORMAL = "normal"
    APPROVAL_GATE = "approval_gate"


class FailurePolicy(str, Enum):
    CONTINUE = "continue"
    ABORT = "abort"


class OutputLevel(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class ApprovalAction(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


TERMINAL_SUCCESS: frozenset[TaskStatus] = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})


@dataclass(frozen=True, slots=True)
class SkipProbe:
    """Read-only view handed to a descriptor's skip condition."""

    inputs: Mapping[str, Any]
    results: Mapping[str, Any]


TaskBody = Callable[["TaskContext"], Mapping[str, Any] | None]
SkipCondition = Callable[[SkipProbe], bool]


@dataclass(frozen=True, slots=True)
class GateParameters:
    message: str
    approve_label: str = "Approve"
    reject_label: str = "Reject"
    require_reason: bool = False
    timeout_minutes: float = 0.0
    default_timeout_action: ApprovalAction | None = None

    @property
    def has_timeout(self) -> bool:
        return self.timeout_minutes > 0


@dataclass(frozen=True, slots=True)
class TaskDescriptor:
    """A declared unit of work. Never mutated after registration."""

    name: str
    title: str
    order: int = 0
    kind: TaskKind = TaskKind.NORMAL
    body: TaskBody | None = None
    gate: GateParameters | None = None
    description: str = ""
    arguments: Mapping[str, Any] = field(default_factory=dict)
    failure_policy: FailurePolicy | None = None
    retry_count: int = 0
    retry_delay_seconds: float = 0.0
    timeout_seconds: float = 0.0
    skip_condition: SkipCondition | None = None

    @classmethod
    def task(
        cls,
        name: str,
        body: TaskBody,
        *,
        title: str | None = None,
        order: int = 0,
        **options: Any,
    ) -> TaskDescriptor:
        return cls(name=name, title=title or name, order=order, body=body, **options)

    @classmethod
    def approval_gate(
        cls,
        name: str,
        message: str,
        *,
        title: str | None = None,
        order: int = 0,
        approve_label: str = "Approve",
        reject_label: str = "Reject",
        require_reason: bool = False,
        timeout_minutes: float = 0.0,
        default_timeout_action: ApprovalAction | None = None,
        **options: Any,
    ) -> TaskDescriptor:
        gate = GateParameters(
            message=message,
            approve_label=approve_label,
            reject_label=reject_label,
            require_reason=require_reason,
            timeout_minutes=timeout_minutes,
            default_timeout_action=default_timeout_action,
        )
        return cls(
            name=name,
            title=title or name,
            order=order,
            kind=TaskKind.APPROVAL_GATE,
            gate=gate,
            **options,
        )


@dataclass(frozen=True, slots=True)
class OutputLine:
    level: OutputLevel
    text: str
    at: datetime


@dataclass(frozen=True, slots=True)
class ApprovalDecision:
    """Decision delivered by an external presentation layer."""

    action: ApprovalAction
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class DecisionRecord:
    action: ApprovalAction
    reason: str | None
    decided_at: datetime
    timed_out: bool = False


@dataclass(slots=True)
class TaskRuntimeState:
    name: str
    status: TaskStatus = TaskStatus.NOT_STARTED
    progress_percent: int = 0
    progress_message: str = ""
    output: list[OutputLine] = field(default_factory=list)
    error: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    decision: DecisionRecord | None = None
    attempts: int = 0
    pre_completed: bool = False


@dataclass(frozen=True, slots=True)
class RestartRecord:
    reason: str
    task_name: str | None
    at: datetime


@dataclass(slots=True)
class WorkflowRuntime:
    workflow_id: str
    tasks: list[TaskRuntimeState] = field(default_factory=list)
    current_index: int = 0
    status: WorkflowStatus = WorkflowStatus.NOT_STARTED
    started_at: datetime | None = None
    ended_at: datetime | None = None
    results: dict[str, Any] = field(default_factory=dict)
    inputs: dict[str, Any] = field(default_factory=dict)
    restart_count: int = 0
    restart_history: list[RestartRecord] = field(default_factory=list)
    failure_reason: str | None = None
    log_file: str | None = None

    @classmethod
    def fresh(
        cls,
        workflow_id: str,
        descriptors: Sequence[TaskDescriptor],
        inputs: Mapping[str, Any] | None = None,
    ) -> WorkflowRuntime:
        return cls(
            workflow_id=workflow_id,
            tasks=[TaskRuntimeState(name=d.name) for d in descriptors],
            inputs=dict(inputs or {}),
        )

    def task(self, name: str) -> TaskRuntimeState:
        for state in self.tasks:
            if state.name == name:
                return state
        raise KeyError(name)

    def skip_probe(self) -> SkipProbe:
        return SkipProbe(
            inputs=MappingProxyType(copy.deepcopy(self.inputs)),
            results=MappingProxyType(copy.deepcopy(self.results)),
        )


@dataclass(frozen=True, slots=True)
class Principal:
    """The user/host pair a checkpoint is bound to."""

    user: str
    host: str

    @property
    def identity(self) -> str:
        return f"{self.user}@{self.host}"

    @classmethod
    def current(cls) -> Principal:
        return cls(user=getpass.getuser(), host=socket.gethostname())


@dataclass(slots=True)
class Snapshot:
    schema_version: int
    workflow_id: str
    runtime: WorkflowRuntime
    saved_by: Principal
    saved_at: datetime

    @classmethod
    def capture(cls, runtime: WorkflowRuntime, principal: Principal) -> Snapshot:
        return cls(
            schema_version=SCHEMA_VERSION,
            workflow_id=runtime.workflow_id,
            runtime=copy.deepcopy(runtime),
            saved_by=principal,
            saved_at=utc_now(),
        )
