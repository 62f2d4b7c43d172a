#!/usr/bin/env python3
"""Example workflow: patch a host, restart once, then ask for sign-off.

Run it through the CLI:

    checkpoint-orchestrator run --workflow examples/basic_usage.py:build_workflow \
        --input environment=staging

The first run stops after `apply_patches` asks for a restart (exit code 3).
Running the same command again resumes at `apply_patches`, which sees the
`patches_staged` marker and finishes, followed by the approval gate.
"""

from __future__ import annotations

from typing import Any

from checkpoint_orchestrator.workflow.context import TaskContext
from checkpoint_orchestrator.workflow.model import (
    ApprovalAction,
    FailurePolicy,
    SkipProbe,
    TaskDescriptor,
)
from checkpoint_orchestrator.workflow.registry import TaskRegistry


def check_prerequisites(ctx: TaskContext) -> dict[str, Any]:
    environment = ctx.get_input("environment", "dev")
    ctx.info(f"Checking prerequisites for {environment}")
    ctx.set_progress(50, "Disk space OK")
    return {"environment": environment}


def apply_patches(ctx: TaskContext) -> None:
    if not ctx.has_result("patches_staged"):
        ctx.info("Staging patches")
        ctx.set_result("patches_staged", True)
        ctx.request_suspend("Patches staged; a restart is required to apply them")
        return
    ctx.info("Patches applied after restart")


def clean_temp_files(ctx: TaskContext) -> None:
    for step in range(1, 4):
        if ctx.wait(0.05):
            ctx.raise_if_cancelled()
        ctx.info(f"Cleanup pass {step}")


def _is_dev(probe: SkipProbe) -> bool:
    return probe.inputs.get("environment") == "dev"


def build_workflow() -> TaskRegistry:
    return TaskRegistry(
        "host-maintenance",
        [
            TaskDescriptor.task("check_prerequisites", check_prerequisites, title="Check prerequisites"),
            TaskDescriptor.task(
                "apply_patches",
                apply_patches,
                title="Apply patches",
                retry_count=1,
                retry_delay_seconds=1.0,
            ),
            TaskDescriptor.task(
                "clean_temp_files",
                clean_temp_files,
                title="Clean temporary files",
                failure_policy=FailurePolicy.CONTINUE,
            ),
            TaskDescriptor.approval_gate(
                "sign_off",
                "Maintenance finished. Sign off?",
                title="Operator sign-off",
                require_reason=False,
                timeout_minutes=30,
                default_timeout_action=ApprovalAction.REJECTED,
                skip_condition=_is_dev,
            ),
        ],
    )
