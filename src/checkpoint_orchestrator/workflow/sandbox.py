"""Execution sandbox: one task body per call, on its own worker thread.

The control thread only waits. A body that raises cannot unwind into the
runner, and a body that hangs cannot block it past its timeout plus the
cancellation grace period. Cancellation is cooperative: the sandbox signals,
the body is expected to notice (`TaskContext.cancelled`, `raise_if_cancelled`,
`wait`). A worker that ignores the signal is abandoned, not killed.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from checkpoint_orchestrator.workflow.context import TaskContext
from checkpoint_orchestrator.workflow.model import TaskBody

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SandboxOutcome:
    """What happened to one attempt."""

    ok: bool
    elapsed_seconds: float
    result: Mapping[str, Any] | None = None
    error: BaseException | None = None
    timed_out: bool = False
    interrupted: bool = False
    abandoned: bool = False


@dataclass
class _Slot:
    result: Any = None
    error: BaseException | None = None


class ExecutionSandbox:
    def __init__(
        self,
        *,
        cancel_grace_seconds: float = 5.0,
        poll_interval_seconds: float = 0.05,
    ) -> None:
        self.cancel_grace_seconds = cancel_grace_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def execute(
        self,
        body: TaskBody,
        context: TaskContext,
        *,
        cancel_event: threading.Event,
        timeout_seconds: float = 0.0,
    ) -> SandboxOutcome:
        """Run `body(context)` on a worker thread and wait for it.

        `cancel_event` is the attempt's signal; the sandbox sets it itself on
        timeout. The context is closed before returning, whatever happened.
        """

        slot = _Slot()
        done = threading.Event()

        thread = threading.Thread(
            target=_run_body,
            name=f"task-{context.name}-{context.index}",
            daemon=True,
            kwargs={"body": body, "context": context, "slot": slot, "done": done},
        )

        started = time.monotonic()
        thread.start()

        timed_out = False
        signalled_at: float | None = None
        abandoned = False

        try:
            while not done.wait(self.poll_interval_seconds):
                now = time.monotonic()
                if timeout_seconds and not timed_out and now - started >= timeout_seconds:
                    timed_out = True
                    logger.warning(
                        "Task attempt timed out; signalling cancellation",
                        extra={"task": context.name, "timeout_seconds": timeout_seconds},
                    )
                    cancel_event.set()
                if cancel_event.is_set():
                    if signalled_at is None:
                        signalled_at = now
                    elif now - signalled_at >= self.cancel_grace_seconds:
                        abandoned = True
                        logger.error(
                            "Task body ignored cancellation; abandoning worker",
                            extra={"task": context.name, "worker_thread": thread.name},
                        )
                        break
        finally:
            context.close()

        elapsed = time.monotonic() - started
        interrupted = cancel_event.is_set()

        if abandoned:
            return SandboxOutcome(
                ok=False,
                elapsed_seconds=elapsed,
                timed_out=timed_out,
                interrupted=True,
                abandoned=True,
            )

        if slot.error is not None:
            return SandboxOutcome(
                ok=False,
                elapsed_seconds=elapsed,
                error=slot.error,
                timed_out=timed_out,
                interrupted=interrupted,
            )

        if timed_out:
            return SandboxOutcome(
                ok=False, elapsed_seconds=elapsed, timed_out=True, interrupted=True
            )

        result = slot.result
        if result is not None and not isinstance(result, Mapping):
            return SandboxOutcome(
                ok=False,
                elapsed_seconds=elapsed,
                error=TypeError(
                    f"Task body returned {type(result).__name__}; expected a mapping or None"
                ),
                interrupted=interrupted,
            )

        return SandboxOutcome(
            ok=True, elapsed_seconds=elapsed, result=result, interrupted=interrupted
        )


def _run_body(*, body: TaskBody, context: TaskContext, slot: _Slot, done: threading.Event) -> None:
    try:
        slot.result = body(context)
    except BaseException as e:  # noqa: BLE001 - nothing may escape the worker thread
        slot.error = e
        logger.debug("Task body raised", extra={"task": context.name}, exc_info=True)
    finally:
        done.set()
