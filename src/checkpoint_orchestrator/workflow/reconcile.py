"""Resume reconciliation: merge a loaded snapshot with the declared tasks."""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from checkpoint_orchestrator.errors import ReconciliationError
from checkpoint_orchestrator.workflow.context import ensure_json_value
from checkpoint_orchestrator.workflow.model import (
    TERMINAL_SUCCESS,
    Snapshot,
    TaskRuntimeState,
    WorkflowRuntime,
    WorkflowStatus,
)
from checkpoint_orchestrator.workflow.registry import TaskRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    runtime: WorkflowRuntime
    pre_completed: tuple[str, ...]
    start_index: int


def reconcile(
    registry: TaskRegistry,
    snapshot: Snapshot,
    inputs: Mapping[str, Any] | None = None,
) -> ReconcileResult:
    """Build the runtime for a resumed run.

    Tasks are matched by name. Saved Completed/Skipped entries become
    pre-completed and are not executed again; every other declared task runs
    from scratch, including the task that was pending a restart.

    Raises:
        ReconciliationError: different workflow, a saved task that is no longer
            declared, or declared tasks whose relative order changed.
    """

    if snapshot.workflow_id != registry.workflow_id:
        raise ReconciliationError(
            f"Checkpoint belongs to workflow '{snapshot.workflow_id}', "
            f"not '{registry.workflow_id}'"
        )

    declared = registry.names()
    saved = snapshot.runtime
    saved_by_name = {t.name: t for t in saved.tasks}

    unknown = [name for name in saved_by_name if name not in declared]
    if unknown:
        raise ReconciliationError(f"Checkpoint has tasks that are no longer declared: {unknown}")

    shared_declared = [name for name in declared if name in saved_by_name]
    shared_saved = [t.name for t in saved.tasks]
    if shared_declared != shared_saved:
        raise ReconciliationError(
            f"Declared task order {shared_declared} differs from checkpoint order {shared_saved}"
        )

    tasks: list[TaskRuntimeState] = []
    pre_completed: list[str] = []
    for name in declared:
        saved_state = saved_by_name.get(name)
        if saved_state is not None and saved_state.status in TERMINAL_SUCCESS:
            restored = copy.deepcopy(saved_state)
            restored.pre_completed = True
            tasks.append(restored)
            pre_completed.append(name)
        else:
            tasks.append(TaskRuntimeState(name=name))

    start_index = next(
        (i for i, state in enumerate(tasks) if not state.pre_completed), len(tasks)
    )

    merged_inputs = copy.deepcopy(saved.inputs)
    for key, value in (inputs or {}).items():
        merged_inputs[key] = ensure_json_value(key, value)

    runtime = WorkflowRuntime(
        workflow_id=registry.workflow_id,
        tasks=tasks,
        current_index=start_index,
        status=(
            WorkflowStatus.COMPLETED if start_index == len(tasks) else WorkflowStatus.NOT_STARTED
        ),
        started_at=saved.started_at,
        results=copy.deepcopy(saved.results),
        inputs=merged_inputs,
        restart_count=saved.restart_count,
        restart_history=list(saved.restart_history),
        log_file=saved.log_file,
    )

    logger.info(
        "Checkpoint reconciled",
        extra={
            "workflow_id": registry.workflow_id,
            "pre_completed": pre_completed,
            "start_index": start_index,
            "restart_count": runtime.restart_count,
        },
    )
    return ReconcileResult(
        runtime=runtime, pre_completed=tuple(pre_completed), start_index=start_index
    )
