"""Pydantic models for the REST server."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from checkpoint_orchestrator.workflow.model import (
    ApprovalAction,
    OutputLevel,
    TaskRuntimeState,
    TaskStatus,
    WorkflowRuntime,
    WorkflowStatus,
)
from checkpoint_orchestrator.workflow.render import RenderableDescriptor


class ApiOutputLine(BaseModel):
    level: OutputLevel
    text: str
    at: datetime


class ApiDecision(BaseModel):
    action: ApprovalAction
    reason: str | None = None
    decided_at: datetime
    timed_out: bool = False


class ApiTask(BaseModel):
    descriptor: RenderableDescriptor
    status: TaskStatus
    progress_percent: int
    progress_message: str
    error: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    attempts: int = 0
    pre_completed: bool = False
    decision: ApiDecision | None = None
    output: list[ApiOutputLine] = Field(default_factory=list)


class ApiWorkflow(BaseModel):
    workflow_id: str
    status: WorkflowStatus
    current_index: int
    total_tasks: int
    started_at: datetime | None = None
    ended_at: datetime | None = None
    restart_count: int = 0
    failure_reason: str | None = None
    pending_approvals: list[str] = Field(default_factory=list)
    results: dict[str, Any] = Field(default_factory=dict)


class DecisionRequest(BaseModel):
    action: ApprovalAction
    reason: str | None = None


def to_api_task(descriptor: RenderableDescriptor, state: TaskRuntimeState) -> ApiTask:
    decision = state.decision
    return ApiTask(
        descriptor=descriptor,
        status=state.status,
        progress_percent=state.progress_percent,
        progress_message=state.progress_message,
        error=state.error,
        started_at=state.started_at,
        ended_at=state.ended_at,
        attempts=state.attempts,
        pre_completed=state.pre_completed,
        decision=(
            ApiDecision(
                action=decision.action,
                reason=decision.reason,
                decided_at=decision.decided_at,
                timed_out=decision.timed_out,
            )
            if decision is not None
            else None
        ),
        output=[ApiOutputLine(level=o.level, text=o.text, at=o.at) for o in state.output],
    )


def to_api_workflow(runtime: WorkflowRuntime, pending: list[str]) -> ApiWorkflow:
    return ApiWorkflow(
        workflow_id=runtime.workflow_id,
        status=runtime.status,
        current_index=runtime.current_index,
        total_tasks=len(runtime.tasks),
        started_at=runtime.started_at,
        ended_at=runtime.ended_at,
        restart_count=runtime.restart_count,
        failure_reason=runtime.failure_reason,
        pending_approvals=pending,
        results=runtime.results,
    )
