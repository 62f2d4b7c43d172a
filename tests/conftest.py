"""Test configuration and fixtures."""

from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from checkpoint_orchestrator.orchestrator.config import OrchestratorSettings
from checkpoint_orchestrator.state.keys import UserSecretKeySource
from checkpoint_orchestrator.state.secure_store import SecureStateStore
from checkpoint_orchestrator.workflow.context import RunContext
from checkpoint_orchestrator.workflow.model import (
    ApprovalAction,
    DecisionRecord,
    OutputLevel,
    OutputLine,
    Principal,
    RestartRecord,
    Snapshot,
    TaskDescriptor,
    TaskRuntimeState,
    TaskStatus,
    WorkflowRuntime,
    WorkflowStatus,
)
from checkpoint_orchestrator.workflow.observer import RunObserver
from checkpoint_orchestrator.workflow.reconcile import reconcile
from checkpoint_orchestrator.workflow.registry import TaskRegistry
from checkpoint_orchestrator.workflow.runner import WorkflowRunner


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory (created by the store on demand)."""
    return tmp_path / "state"


@pytest.fixture
def principal() -> Principal:
    return Principal(user="operator", host="build-01")


@pytest.fixture
def settings(temp_state_dir: Path) -> OrchestratorSettings:
    """Fast settings: short grace periods and one-tenth-second approval minutes."""
    return OrchestratorSettings(
        _env_file=None,
        state_dir=temp_state_dir,
        lock_timeout_seconds=0.3,
        cancel_grace_seconds=0.5,
        sandbox_poll_interval_seconds=0.01,
        approval_seconds_per_minute=0.1,
    )


@pytest.fixture
def key_source(settings: OrchestratorSettings, principal: Principal) -> UserSecretKeySource:
    return UserSecretKeySource(settings.key_file, principal=principal, machine_id="machine-a")


@pytest.fixture
def store(settings: OrchestratorSettings, key_source: UserSecretKeySource) -> SecureStateStore:
    return SecureStateStore(
        settings.checkpoint_file,
        key_source=key_source,
        lock_timeout_seconds=settings.lock_timeout_seconds,
    )


RunnerFactory = Callable[..., WorkflowRunner]


@pytest.fixture
def make_runner(
    settings: OrchestratorSettings, store: SecureStateStore, principal: Principal
) -> RunnerFactory:
    """Build a runner for fresh descriptors, or resume one from `snapshot`."""

    def factory(
        descriptors: Iterable[TaskDescriptor] | TaskRegistry,
        *,
        workflow_id: str = "wf",
        inputs: Mapping[str, Any] | None = None,
        snapshot: Snapshot | None = None,
        observer: RunObserver | None = None,
        run_settings: OrchestratorSettings | None = None,
    ) -> WorkflowRunner:
        registry = (
            descriptors
            if isinstance(descriptors, TaskRegistry)
            else TaskRegistry(workflow_id, descriptors)
        )
        if snapshot is not None:
            runtime = reconcile(registry, snapshot, inputs).runtime
        else:
            runtime = registry.new_runtime(inputs)
        context = RunContext(
            registry=registry,
            runtime=runtime,
            store=store,
            settings=run_settings or settings,
            principal=principal,
        )
        return WorkflowRunner(context, observer=observer)

    return factory


@pytest.fixture
def snapshot(principal: Principal) -> Snapshot:
    """A snapshot that exercises every persisted field."""
    t0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    runtime = WorkflowRuntime(
        workflow_id="maintenance",
        tasks=[
            TaskRuntimeState(
                name="prepare",
                status=TaskStatus.COMPLETED,
                progress_percent=100,
                progress_message="done",
                output=[OutputLine(level=OutputLevel.WARN, text="low disk  ", at=t0)],
                started_at=t0,
                ended_at=t0,
                attempts=2,
            ),
            TaskRuntimeState(
                name="approve",
                status=TaskStatus.COMPLETED,
                decision=DecisionRecord(
                    action=ApprovalAction.APPROVED, reason="ok", decided_at=t0, timed_out=False
                ),
                pre_completed=True,
            ),
            TaskRuntimeState(
                name="patch",
                status=TaskStatus.PENDING_REBOOT,
                progress_message="Pending restart: kernel",
            ),
        ],
        current_index=2,
        status=WorkflowStatus.RUNNING,
        started_at=t0,
        results={"count": 3, "nested": {"a": [1, 2.5, None, True]}, "name": "ünïcode"},
        inputs={"environment": "prod"},
        restart_count=1,
        restart_history=[RestartRecord(reason="kernel", task_name="patch", at=t0)],
        log_file="/var/log/maintenance/run.jsonl",
    )
    return Snapshot(
        schema_version=1,
        workflow_id="maintenance",
        runtime=runtime,
        saved_by=principal,
        saved_at=t0,
    )
