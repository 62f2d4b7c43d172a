"""Presentation boundary.

A presentation layer only ever sees `RenderableDescriptor`: what to label a
task with and, for gates, what to ask. Bodies, skip conditions and policies
stay on this side.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from checkpoint_orchestrator.workflow.model import ApprovalAction, TaskDescriptor, TaskKind


class RenderableGate(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    approve_label: str
    reject_label: str
    require_reason: bool
    timeout_minutes: float
    default_timeout_action: ApprovalAction | None


class RenderableDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    title: str
    description: str
    kind: TaskKind
    order: int
    gate: RenderableGate | None = None


def to_renderable(descriptor: TaskDescriptor) -> RenderableDescriptor:
    gate = descriptor.gate
    return RenderableDescriptor(
        name=descriptor.name,
        title=descriptor.title,
        description=descriptor.description,
        kind=descriptor.kind,
        order=descriptor.order,
        gate=(
            RenderableGate(
                message=gate.message,
                approve_label=gate.approve_label,
                reject_label=gate.reject_label,
                require_reason=gate.require_reason,
                timeout_minutes=gate.timeout_minutes,
                default_timeout_action=gate.default_timeout_action,
            )
            if gate is not None
            else None
        ),
    )
