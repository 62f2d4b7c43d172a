"""Workflow runner: drives the ordered task sequence for one run.

One control thread calls `run()` (or `start()` + `advance()`). Everything else
(`cancel`, `submit_decision`, `view`, and `request_suspend` from inside a task
body) may be called from any thread; all runtime mutation happens under the
run lock.
"""

from __future__ import annotations

import copy
import functools
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from checkpoint_orchestrator.errors import (
    ExecutionError,
    TaskCancelledError,
    TaskTimeoutError,
    ValidationError,
)
from checkpoint_orchestrator.workflow.context import RunContext, TaskContext, ensure_json_value
from checkpoint_orchestrator.workflow.gate import ApprovalGateController
from checkpoint_orchestrator.workflow.model import (
    TERMINAL_SUCCESS,
    ApprovalAction,
    ApprovalDecision,
    DecisionRecord,
    RestartRecord,
    Snapshot,
    TaskDescriptor,
    TaskKind,
    TaskRuntimeState,
    TaskStatus,
    WorkflowRuntime,
    WorkflowStatus,
    utc_now,
)
from checkpoint_orchestrator.workflow.observer import GuardedObserver, RunObserver
from checkpoint_orchestrator.workflow.sandbox import ExecutionSandbox, SandboxOutcome
from checkpoint_orchestrator.workflow.state_machine import (
    IllegalTransitionError,
    is_continuation_eligible,
    transition_task,
    transition_workflow,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Task was cancelled"


@dataclass(frozen=True, slots=True)
class RunResult:
    status: WorkflowStatus
    suspended: bool = False
    suspend_reason: str | None = None
    checkpoint_path: Path | None = None
    failure_reason: str | None = None
    failed_tasks: tuple[str, ...] = ()
    results: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class _TaskOutcome:
    status: TaskStatus
    error: str | None = None
    message: str | None = None
    suspended: bool = False
    cancelled: bool = False


class WorkflowRunner:
    """Runs the tasks of `context.registry` against `context.runtime`.

    A runtime produced by the reconciler may already carry pre-completed
    tasks; they are stepped over without executing.
    """

    def __init__(
        self,
        context: RunContext,
        *,
        sandbox: ExecutionSandbox | None = None,
        gates: ApprovalGateController | None = None,
        observer: RunObserver | None = None,
    ) -> None:
        settings = context.settings
        self.context = context
        self.sandbox = sandbox or ExecutionSandbox(
            cancel_grace_seconds=settings.cancel_grace_seconds,
            poll_interval_seconds=settings.sandbox_poll_interval_seconds,
        )
        self.gates = gates or ApprovalGateController(
            seconds_per_minute=settings.approval_seconds_per_minute
        )
        self.observer = GuardedObserver(observer or RunObserver())

        declared = context.registry.names()
        tracked = [t.name for t in context.runtime.tasks]
        if declared != tracked:
            raise ValidationError(
                f"Runtime tasks {tracked} do not mirror the declared order {declared}"
            )
        if context.runtime.workflow_id != context.registry.workflow_id:
            raise ValidationError(
                f"Runtime belongs to workflow '{context.runtime.workflow_id}', "
                f"not '{context.registry.workflow_id}'"
            )
        self._descriptors = context.registry.ordered()

        self._lock = threading.RLock()
        self._cancel_requested = threading.Event()
        self._attempt_cancel: threading.Event | None = None
        self._started = False
        self._suspended = False
        self._suspend_reason: str | None = None
        self._checkpoint_path: Path | None = None

    @property
    def runtime(self) -> WorkflowRuntime:
        return self.context.runtime

    # Lifecycle

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
            registry = self.context.registry
            if not registry.frozen:
                registry.freeze()

            rt = self.runtime
            if rt.status is WorkflowStatus.CANCELLED:
                logger.info("Run was cancelled before it started", extra=self._log_extra())
                return
            if rt.status is not WorkflowStatus.COMPLETED:
                if all(self._is_done(t) for t in rt.tasks):
                    rt.status = transition_workflow(current=rt.status, to=WorkflowStatus.COMPLETED)
                else:
                    rt.status = transition_workflow(current=rt.status, to=WorkflowStatus.RUNNING)
                    rt.started_at = rt.started_at or utc_now()
                    if self.context.settings.log_file is not None:
                        rt.log_file = str(self.context.settings.log_file)

            logger.info(
                "Workflow started",
                extra={
                    **self._log_extra(),
                    "tasks": len(rt.tasks),
                    "start_index": rt.current_index,
                    "restart_count": rt.restart_count,
                },
            )

        if self.runtime.status is WorkflowStatus.COMPLETED:
            self._finish_completed()

    def advance(self) -> bool:
        """Execute the task at the current index.

        Returns True while there is more work to do, False once the run is
        terminal or suspended.
        """

        if not self._started:
            self.start()

        with self._lock:
            rt = self.runtime
            if rt.status is not WorkflowStatus.RUNNING or self._suspended:
                return False
            cancel_now = self._cancel_requested.is_set()
            index = rt.current_index
            finish_now = not cancel_now and index >= len(rt.tasks)
            if not (cancel_now or finish_now) and self._is_done(rt.tasks[index]):
                rt.current_index += 1
                logger.info(
                    "Skipping task already completed in an earlier run",
                    extra={**self._log_extra(), "task": rt.tasks[index].name},
                )
                return True

        if cancel_now:
            self._finish_cancelled()
            return False
        if finish_now:
            self._finish_completed()
            return False

        state = self.runtime.tasks[index]
        descriptor = self._descriptors[index]
        outcome = self._execute(index, descriptor, state)
        if outcome.suspended:
            return False

        self._finish_task(index, descriptor, state, outcome)

        if self._cancel_requested.is_set():
            self._finish_cancelled()
            return False
        return self.runtime.status is WorkflowStatus.RUNNING

    def run(self) -> RunResult:
        self.start()
        while self.advance():
            pass
        return self.result()

    def result(self) -> RunResult:
        with self._lock:
            rt = self.runtime
            return RunResult(
                status=rt.status,
                suspended=self._suspended,
                suspend_reason=self._suspend_reason,
                checkpoint_path=self._checkpoint_path,
                failure_reason=rt.failure_reason,
                failed_tasks=tuple(t.name for t in rt.tasks if t.status is TaskStatus.FAILED),
                results=copy.deepcopy(rt.results),
            )

    def view(self) -> WorkflowRuntime:
        with self._lock:
            return copy.deepcopy(self.runtime)

    # External control

    def cancel(self) -> None:
        with self._lock:
            rt = self.runtime
            if rt.status in (
                WorkflowStatus.COMPLETED,
                WorkflowStatus.FAILED,
                WorkflowStatus.CANCELLED,
            ):
                logger.info("Cancel ignored; workflow already finished", extra=self._log_extra())
                return
            self._cancel_requested.set()
            if self._attempt_cancel is not None:
                self._attempt_cancel.set()
            before_start = rt.status is WorkflowStatus.NOT_STARTED
            if before_start:
                rt.status = transition_workflow(current=rt.status, to=WorkflowStatus.CANCELLED)
                rt.ended_at = utc_now()

        logger.warning("Cancellation requested", extra=self._log_extra())
        self.gates.interrupt()
        if before_start:
            self._remove_checkpoint()
            self.observer.on_workflow_finished(self.view())

    def submit_decision(self, task_name: str, decision: ApprovalDecision) -> DecisionRecord:
        return self.gates.submit(task_name, decision)

    def request_suspend(self, reason: str) -> Path:
        """Checkpoint with the running task marked pending restart, then stop it.

        The snapshot is written from a staged copy; if the write fails the
        error propagates and live state is left as it was.
        """

        with self._lock:
            rt = self.runtime
            index = rt.current_index
            if rt.status is not WorkflowStatus.RUNNING or index >= len(rt.tasks):
                raise IllegalTransitionError("Suspend requested while no task is running")
            if rt.tasks[index].status is not TaskStatus.RUNNING:
                raise IllegalTransitionError(
                    f"Suspend requested for task '{rt.tasks[index].name}' "
                    f"in status {rt.tasks[index].status.value}"
                )

            at = utc_now()
            staged = copy.deepcopy(rt)
            _mark_suspended(staged, index, reason, at)
            path = self.context.store.save(Snapshot.capture(staged, self.context.principal))

            _mark_suspended(rt, index, reason, at)
            self._suspended = True
            self._suspend_reason = reason
            self._checkpoint_path = path
            if self._attempt_cancel is not None:
                self._attempt_cancel.set()
            task_name = rt.tasks[index].name

        logger.warning(
            "Workflow suspended for restart",
            extra={**self._log_extra(), "task": task_name, "reason": reason, "path": str(path)},
        )
        self.observer.on_suspended(reason, path)
        return path

    # Execution

    def _execute(
        self, index: int, descriptor: TaskDescriptor, state: TaskRuntimeState
    ) -> _TaskOutcome:
        skip_reason = self._evaluate_skip_condition(descriptor)

        with self._lock:
            state.status = transition_task(current=state.status, to=TaskStatus.RUNNING)
            state.started_at = utc_now()
            state.ended_at = None
            state.error = None
            state.progress_percent = 0
            state.progress_message = ""
            started = copy.deepcopy(state)

        if skip_reason is not None:
            return _TaskOutcome(status=TaskStatus.SKIPPED, message=skip_reason)

        logger.info(
            "Task started",
            extra={**self._log_extra(), "task": descriptor.name, "index": index},
        )
        self.observer.on_task_started(started)

        if descriptor.kind is TaskKind.APPROVAL_GATE:
            return self._run_gate(descriptor, state)
        return self._run_body(index, descriptor, state)

    def _evaluate_skip_condition(self, descriptor: TaskDescriptor) -> str | None:
        condition = descriptor.skip_condition
        if condition is None:
            return None
        with self._lock:
            probe = self.runtime.skip_probe()
        try:
            skip = bool(condition(probe))
        except Exception:
            logger.warning(
                "Skip condition raised; running the task",
                extra={"task": descriptor.name},
                exc_info=True,
            )
            return None
        return "Skipped by condition" if skip else None

    def _run_body(
        self, index: int, descriptor: TaskDescriptor, state: TaskRuntimeState
    ) -> _TaskOutcome:
        assert descriptor.body is not None
        max_attempts = 1 + descriptor.retry_count
        last_error = "Task failed"

        for attempt in range(1, max_attempts + 1):
            with self._lock:
                if self._cancel_requested.is_set():
                    return _TaskOutcome(
                        status=TaskStatus.FAILED, error=CANCELLED_MESSAGE, cancelled=True
                    )
                state.attempts += 1
                if attempt > 1:
                    state.progress_percent = 0
                cancel_event = threading.Event()
                self._attempt_cancel = cancel_event

            ctx = TaskContext(
                descriptor=descriptor,
                index=index,
                total=len(self._descriptors),
                state=state,
                runtime=self.runtime,
                lock=self._lock,
                cancel_event=cancel_event,
                observer=self.observer,
                suspend=functools.partial(self._suspend_from_task, attempt=cancel_event),
                auto_progress=self.context.settings.auto_progress,
            )
            if attempt > 1:
                ctx.warn(f"Retrying after failure (attempt {attempt} of {max_attempts}): {last_error}")

            outcome = self.sandbox.execute(
                descriptor.body,
                ctx,
                cancel_event=cancel_event,
                timeout_seconds=descriptor.timeout_seconds,
            )

            with self._lock:
                self._attempt_cancel = None
                if self._suspended:
                    return _TaskOutcome(status=TaskStatus.PENDING_REBOOT, suspended=True)

            if outcome.ok:
                try:
                    self._merge_results(descriptor.name, outcome.result)
                except ValidationError as e:
                    logger.warning(
                        "Task returned results that cannot be checkpointed",
                        extra={"task": descriptor.name, "error": str(e)},
                    )
                    last_error = str(e)
                else:
                    if ctx.skip_reason is not None:
                        return _TaskOutcome(status=TaskStatus.SKIPPED, message=ctx.skip_reason)
                    return _TaskOutcome(status=TaskStatus.COMPLETED)
            else:
                if self._cancel_requested.is_set():
                    return _TaskOutcome(
                        status=TaskStatus.FAILED, error=CANCELLED_MESSAGE, cancelled=True
                    )
                error = self._describe_failure(descriptor, outcome)
                logger.warning(
                    "Task attempt failed",
                    extra={
                        **self._log_extra(),
                        "task": descriptor.name,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "error": str(error),
                    },
                )
                last_error = str(error)

            if attempt < max_attempts and descriptor.retry_delay_seconds:
                if self._cancel_requested.wait(descriptor.retry_delay_seconds):
                    return _TaskOutcome(
                        status=TaskStatus.FAILED, error=CANCELLED_MESSAGE, cancelled=True
                    )

        return _TaskOutcome(status=TaskStatus.FAILED, error=last_error)

    def _suspend_from_task(self, reason: str, *, attempt: threading.Event) -> None:
        with self._lock:
            if attempt is not self._attempt_cancel:
                raise TaskCancelledError(
                    "Suspend requested by an attempt that is no longer running"
                )
            self.request_suspend(reason)

    def _merge_results(self, task_name: str, result: Mapping[str, Any] | None) -> None:
        if not result:
            return
        validated = {str(k): ensure_json_value(str(k), v) for k, v in result.items()}
        with self._lock:
            self.runtime.results.update(validated)
        logger.debug("Merged task results", extra={"task": task_name, "keys": sorted(validated)})

    def _describe_failure(
        self, descriptor: TaskDescriptor, outcome: SandboxOutcome
    ) -> ExecutionError:
        name = descriptor.name
        if outcome.timed_out:
            error: ExecutionError = TaskTimeoutError(
                name, f"Task timed out after {descriptor.timeout_seconds:g} seconds"
            )
        elif isinstance(outcome.error, ExecutionError):
            error = outcome.error
        elif isinstance(outcome.error, TaskCancelledError):
            error = ExecutionError(name, CANCELLED_MESSAGE)
        elif outcome.error is not None:
            error = ExecutionError(name, f"{type(outcome.error).__name__}: {outcome.error}")
        else:
            error = ExecutionError(name, "Task failed")

        if outcome.abandoned:
            error_type = TaskTimeoutError if outcome.timed_out else ExecutionError
            error = error_type(
                name,
                f"{error}; worker did not stop within "
                f"{self.sandbox.cancel_grace_seconds:g}s and was abandoned",
            )
        if outcome.error is not None and error is not outcome.error:
            error.__cause__ = outcome.error
        return error

    def _run_gate(self, descriptor: TaskDescriptor, state: TaskRuntimeState) -> _TaskOutcome:
        gate = descriptor.gate
        assert gate is not None
        with self._lock:
            state.attempts += 1
            state.status = transition_task(current=state.status, to=TaskStatus.AWAITING_APPROVAL)
            state.progress_message = gate.message
            cancel_event = threading.Event()
            if self._cancel_requested.is_set():
                cancel_event.set()
            self._attempt_cancel = cancel_event
            self.gates.open(descriptor.name, gate)

        self.observer.on_awaiting_approval(descriptor.name, gate)
        record = self.gates.wait(descriptor.name, cancel_event)

        with self._lock:
            self._attempt_cancel = None
            if record is None:
                return _TaskOutcome(
                    status=TaskStatus.FAILED, error=CANCELLED_MESSAGE, cancelled=True
                )
            state.decision = record

        if record.action is ApprovalAction.APPROVED:
            return _TaskOutcome(status=TaskStatus.COMPLETED, message=record.reason)
        error = f"Rejected: {record.reason}" if record.reason else "Rejected"
        return _TaskOutcome(status=TaskStatus.FAILED, error=error)

    def _finish_task(
        self,
        index: int,
        descriptor: TaskDescriptor,
        state: TaskRuntimeState,
        outcome: _TaskOutcome,
    ) -> None:
        with self._lock:
            rt = self.runtime
            state.status = transition_task(current=state.status, to=outcome.status)
            state.ended_at = utc_now()
            if outcome.status is TaskStatus.COMPLETED:
                state.progress_percent = 100
                if outcome.message:
                    state.progress_message = outcome.message
            elif outcome.status is TaskStatus.SKIPPED:
                state.progress_message = outcome.message or "Skipped"
            elif outcome.status is TaskStatus.FAILED:
                state.error = outcome.error
                state.progress_message = outcome.error or "Failed"

            aborting = False
            if is_continuation_eligible(
                state.status, self.context.registry.policy_for(descriptor)
            ):
                rt.current_index = index + 1
            elif not outcome.cancelled:
                aborting = True
                rt.failure_reason = f"Task '{descriptor.name}' failed: {outcome.error}"
                rt.status = transition_workflow(current=rt.status, to=WorkflowStatus.FAILED)
                rt.ended_at = state.ended_at

            finished = copy.deepcopy(state)
            checkpoint = (
                self.context.settings.checkpoint_after_each_task
                and rt.status is WorkflowStatus.RUNNING
                and not self._cancel_requested.is_set()
                and rt.current_index < len(rt.tasks)
            )
            if checkpoint:
                self._checkpoint_path = self.context.store.save(
                    Snapshot.capture(rt, self.context.principal)
                )

        log = logger.info if state.status in TERMINAL_SUCCESS else logger.warning
        log(
            "Task finished",
            extra={
                **self._log_extra(),
                "task": descriptor.name,
                "status": state.status.value,
                "error": state.error,
            },
        )
        self.observer.on_task_finished(finished)

        if aborting:
            logger.error(
                "Workflow failed",
                extra={**self._log_extra(), "failure_reason": self.runtime.failure_reason},
            )
            self.observer.on_workflow_finished(self.view())

    def _finish_completed(self) -> None:
        with self._lock:
            rt = self.runtime
            if rt.status is WorkflowStatus.RUNNING:
                rt.status = transition_workflow(current=rt.status, to=WorkflowStatus.COMPLETED)
            rt.current_index = len(rt.tasks)
            rt.ended_at = rt.ended_at or utc_now()
        self._remove_checkpoint()
        logger.info("Workflow completed", extra=self._log_extra())
        self.observer.on_workflow_finished(self.view())

    def _finish_cancelled(self) -> None:
        with self._lock:
            rt = self.runtime
            if rt.status is WorkflowStatus.CANCELLED:
                return
            rt.status = transition_workflow(current=rt.status, to=WorkflowStatus.CANCELLED)
            rt.ended_at = utc_now()
        self._remove_checkpoint()
        logger.warning("Workflow cancelled", extra=self._log_extra())
        self.observer.on_workflow_finished(self.view())

    def _remove_checkpoint(self) -> None:
        removed = self.context.store.remove(secure=self.context.settings.secure_erase)
        if removed:
            self._checkpoint_path = None

    def _is_done(self, state: TaskRuntimeState) -> bool:
        return state.pre_completed or state.status in TERMINAL_SUCCESS

    def _log_extra(self) -> dict[str, Any]:
        return {"workflow_id": self.runtime.workflow_id}


def _mark_suspended(runtime: WorkflowRuntime, index: int, reason: str, at: datetime) -> None:
    state = runtime.tasks[index]
    state.status = transition_task(current=state.status, to=TaskStatus.PENDING_REBOOT)
    state.progress_message = f"Pending restart: {reason}"
    runtime.restart_count += 1
    runtime.restart_history.append(RestartRecord(reason=reason, task_name=state.name, at=at))
