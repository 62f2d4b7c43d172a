"""Unit tests for the execution sandbox and the task context it hands to bodies."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

import pytest

from checkpoint_orchestrator.errors import ValidationError
from checkpoint_orchestrator.workflow.context import TaskContext
from checkpoint_orchestrator.workflow.model import (
    OutputLevel,
    TaskDescriptor,
    TaskRuntimeState,
    WorkflowRuntime,
)
from checkpoint_orchestrator.workflow.observer import RunObserver
from checkpoint_orchestrator.workflow.sandbox import ExecutionSandbox


class RecordingObserver(RunObserver):
    def __init__(self) -> None:
        self.progress: list[tuple[int, str]] = []

    def on_progress(self, task_name: str, percent: int, message: str) -> None:
        self.progress.append((percent, message))


def _context(
    body: Callable[[TaskContext], Any],
    *,
    auto_progress: bool = True,
    observer: RunObserver | None = None,
    arguments: dict[str, Any] | None = None,
) -> tuple[TaskContext, TaskRuntimeState, WorkflowRuntime, threading.Event]:
    descriptor = TaskDescriptor.task("job", body, arguments=arguments or {})
    state = TaskRuntimeState(name="job")
    runtime = WorkflowRuntime(workflow_id="wf", tasks=[state], inputs={"env": "prod"})
    cancel = threading.Event()
    ctx = TaskContext(
        descriptor=descriptor,
        index=0,
        total=1,
        state=state,
        runtime=runtime,
        lock=threading.RLock(),
        cancel_event=cancel,
        observer=observer or RunObserver(),
        suspend=lambda reason: None,
        auto_progress=auto_progress,
    )
    return ctx, state, runtime, cancel


def _sandbox() -> ExecutionSandbox:
    return ExecutionSandbox(cancel_grace_seconds=0.3, poll_interval_seconds=0.01)


def test_successful_body_returns_result_and_captures_output() -> None:
    def body(ctx: TaskContext) -> dict[str, Any]:
        ctx.info("  starting  ")
        ctx.warn("careful")
        return {"answer": 42}

    ctx, state, _, cancel = _context(body)
    outcome = _sandbox().execute(body, ctx, cancel_event=cancel)

    assert outcome.ok
    assert outcome.result == {"answer": 42}
    assert [(line.level, line.text) for line in state.output] == [
        (OutputLevel.INFO, "  starting  "),
        (OutputLevel.WARN, "careful"),
    ]


def test_exceptions_never_escape_the_sandbox() -> None:
    def body(ctx: TaskContext) -> None:
        raise SystemExit(3)

    ctx, _, _, cancel = _context(body)
    outcome = _sandbox().execute(body, ctx, cancel_event=cancel)

    assert not outcome.ok
    assert isinstance(outcome.error, SystemExit)


def test_non_mapping_return_is_an_error() -> None:
    def body(ctx: TaskContext) -> str:
        return "done"

    ctx, _, _, cancel = _context(body)
    outcome = _sandbox().execute(body, ctx, cancel_event=cancel)  # type: ignore[arg-type]

    assert not outcome.ok
    assert isinstance(outcome.error, TypeError)


def test_auto_progress_until_manual_progress() -> None:
    def body(ctx: TaskContext) -> None:
        ctx.info("one")
        ctx.info("two")
        ctx.set_progress(30, "manual")
        ctx.info("three")

    observer = RecordingObserver()
    ctx, state, _, cancel = _context(body, observer=observer)
    _sandbox().execute(body, ctx, cancel_event=cancel)

    assert observer.progress == [(15, ""), (25, ""), (30, "manual")]
    assert state.progress_percent == 30


def test_auto_progress_caps_at_ninety() -> None:
    def body(ctx: TaskContext) -> None:
        for i in range(20):
            ctx.info(str(i))

    ctx, state, _, cancel = _context(body)
    _sandbox().execute(body, ctx, cancel_event=cancel)

    assert state.progress_percent == 90


def test_progress_is_clamped_and_never_moves_backwards() -> None:
    def body(ctx: TaskContext) -> None:
        ctx.set_progress(150, "too far")
        ctx.set_progress(40, "backwards")

    ctx, state, _, cancel = _context(body, auto_progress=False)
    _sandbox().execute(body, ctx, cancel_event=cancel)

    assert state.progress_percent == 100
    assert state.progress_message == "backwards"


def test_negative_progress_clamps_to_zero() -> None:
    def body(ctx: TaskContext) -> None:
        ctx.set_progress(-5, "start")

    ctx, state, _, cancel = _context(body, auto_progress=False)
    _sandbox().execute(body, ctx, cancel_event=cancel)

    assert state.progress_percent == 0


def test_timeout_signals_cooperative_body() -> None:
    def body(ctx: TaskContext) -> None:
        while not ctx.wait(0.01):
            pass
        ctx.raise_if_cancelled()

    ctx, _, _, cancel = _context(body)
    outcome = _sandbox().execute(body, ctx, cancel_event=cancel, timeout_seconds=0.1)

    assert not outcome.ok
    assert outcome.timed_out
    assert not outcome.abandoned


def test_uncooperative_body_is_abandoned_and_later_writes_dropped() -> None:
    release = threading.Event()

    def body(ctx: TaskContext) -> None:
        release.wait(5)
        ctx.info("too late")

    ctx, state, _, cancel = _context(body)
    started = time.monotonic()
    outcome = _sandbox().execute(body, ctx, cancel_event=cancel, timeout_seconds=0.05)
    elapsed = time.monotonic() - started

    assert outcome.abandoned
    assert outcome.timed_out
    assert elapsed < 3

    release.set()
    time.sleep(0.1)
    assert state.output == []


def test_abandonment_is_logged_with_worker_thread(caplog: pytest.LogCaptureFixture) -> None:
    release = threading.Event()

    def body(ctx: TaskContext) -> None:
        release.wait(5)

    ctx, _, _, cancel = _context(body)
    with caplog.at_level(logging.ERROR, logger="checkpoint_orchestrator.workflow.sandbox"):
        outcome = _sandbox().execute(body, ctx, cancel_event=cancel, timeout_seconds=0.05)
    release.set()

    assert outcome.abandoned
    records = [r for r in caplog.records if "abandoning worker" in r.getMessage()]
    assert len(records) == 1
    assert records[0].worker_thread.startswith("task-")


def test_external_cancel_interrupts_attempt() -> None:
    def body(ctx: TaskContext) -> None:
        ctx.wait(5)
        ctx.raise_if_cancelled()

    ctx, _, _, cancel = _context(body)
    threading.Timer(0.05, cancel.set).start()
    outcome = _sandbox().execute(body, ctx, cancel_event=cancel)

    assert not outcome.ok
    assert outcome.interrupted
    assert not outcome.timed_out


def test_context_exposes_inputs_arguments_and_shared_results() -> None:
    seen: dict[str, Any] = {}

    def body(ctx: TaskContext) -> None:
        seen["env"] = ctx.get_input("env")
        seen["target"] = ctx.arguments["target"]
        ctx.set_result("items", [1, 2])
        seen["has"] = ctx.has_result("items")
        seen["keys"] = ctx.result_keys()

    ctx, _, runtime, cancel = _context(body, arguments={"target": "db"})
    _sandbox().execute(body, ctx, cancel_event=cancel)

    assert seen == {"env": "prod", "target": "db", "has": True, "keys": ["items"]}
    assert runtime.results == {"items": [1, 2]}


def test_inputs_are_read_only() -> None:
    ctx, _, _, _ = _context(lambda ctx: None)
    with pytest.raises(TypeError):
        ctx.inputs["env"] = "dev"  # type: ignore[index]


def test_non_json_results_are_rejected() -> None:
    ctx, _, _, _ = _context(lambda ctx: None)
    with pytest.raises(ValidationError):
        ctx.set_result("obj", object())
