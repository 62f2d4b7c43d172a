from __future__ import annotations

import logging
from pathlib import Path

from checkpoint_orchestrator.workflow.model import (
    GateParameters,
    OutputLine,
    TaskRuntimeState,
    WorkflowRuntime,
)

logger = logging.getLogger(__name__)


class RunObserver:
    """Lifecycle callbacks for an attached interactive layer.

    Every method is a no-op here; override what you need. Callbacks for output
    and progress arrive on the task's worker thread, everything else on the
    control thread. Implementations must not block.
    """

    def on_task_started(self, state: TaskRuntimeState) -> None:
        pass

    def on_task_finished(self, state: TaskRuntimeState) -> None:
        pass

    def on_output(self, task_name: str, line: OutputLine) -> None:
        pass

    def on_progress(self, task_name: str, percent: int, message: str) -> None:
        pass

    def on_awaiting_approval(self, task_name: str, gate: GateParameters) -> None:
        pass

    def on_suspended(self, reason: str, checkpoint_path: Path) -> None:
        pass

    def on_workflow_finished(self, runtime: WorkflowRuntime) -> None:
        pass


class GuardedObserver(RunObserver):
    """Forwards to another observer; a callback that raises is logged, not propagated.

    The runner wraps whatever observer it is given, so a broken presentation
    layer cannot leave a task stuck in `running`.
    """

    def __init__(self, delegate: RunObserver) -> None:
        self.delegate = delegate

    def on_task_started(self, state: TaskRuntimeState) -> None:
        self._call("on_task_started", state)

    def on_task_finished(self, state: TaskRuntimeState) -> None:
        self._call("on_task_finished", state)

    def on_output(self, task_name: str, line: OutputLine) -> None:
        self._call("on_output", task_name, line)

    def on_progress(self, task_name: str, percent: int, message: str) -> None:
        self._call("on_progress", task_name, percent, message)

    def on_awaiting_approval(self, task_name: str, gate: GateParameters) -> None:
        self._call("on_awaiting_approval", task_name, gate)

    def on_suspended(self, reason: str, checkpoint_path: Path) -> None:
        self._call("on_suspended", reason, checkpoint_path)

    def on_workflow_finished(self, runtime: WorkflowRuntime) -> None:
        self._call("on_workflow_finished", runtime)

    def _call(self, hook: str, *args: object) -> None:
        try:
            getattr(self.delegate, hook)(*args)
        except Exception:
            logger.exception(
                "Observer callback failed",
                extra={"hook": hook, "observer": type(self.delegate).__name__},
            )
