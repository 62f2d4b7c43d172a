"""Run a workflow on a background thread and expose it to adapters.

The CLI and the HTTP adapter both drive runs through a `WorkflowSession`, so
cancellation and approval decisions always arrive from a thread other than
the one executing the run.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import Any

from checkpoint_orchestrator.orchestrator.config import OrchestratorSettings
from checkpoint_orchestrator.state.secure_store import SecureStateStore
from checkpoint_orchestrator.workflow.context import RunContext, ensure_json_value
from checkpoint_orchestrator.workflow.model import (
    ApprovalDecision,
    DecisionRecord,
    WorkflowRuntime,
)
from checkpoint_orchestrator.workflow.observer import RunObserver
from checkpoint_orchestrator.workflow.reconcile import reconcile
from checkpoint_orchestrator.workflow.registry import TaskRegistry
from checkpoint_orchestrator.workflow.render import RenderableDescriptor, to_renderable
from checkpoint_orchestrator.workflow.runner import RunResult, WorkflowRunner

logger = logging.getLogger(__name__)


def prepare_run_context(
    registry: TaskRegistry,
    settings: OrchestratorSettings,
    *,
    inputs: Mapping[str, Any] | None = None,
    fresh: bool = False,
    store: SecureStateStore | None = None,
) -> RunContext:
    """Build the context for a new or resumed run.

    An existing checkpoint is resumed unless `fresh` is set, in which case it
    is discarded first. A checkpoint that fails verification propagates as
    `StateCorruptionError`; it is never silently replaced.
    """

    store = store or SecureStateStore.from_settings(settings)

    if fresh and store.exists():
        store.remove(secure=settings.secure_erase)
        logger.info("Discarded existing checkpoint for a fresh run", extra={"path": str(store.path)})

    snapshot = None if fresh else store.load()
    if snapshot is not None:
        runtime = reconcile(registry, snapshot, inputs).runtime
    else:
        validated = {k: ensure_json_value(k, v) for k, v in (inputs or {}).items()}
        runtime = registry.new_runtime(validated)

    return RunContext(
        registry=registry,
        runtime=runtime,
        store=store,
        settings=settings,
        principal=store.principal,
    )


class WorkflowSession:
    def __init__(self, runner: WorkflowRunner) -> None:
        self.runner = runner
        self._thread: threading.Thread | None = None
        self._done = threading.Event()
        self._result: RunResult | None = None
        self._error: BaseException | None = None

    @classmethod
    def prepare(
        cls,
        registry: TaskRegistry,
        settings: OrchestratorSettings,
        *,
        inputs: Mapping[str, Any] | None = None,
        fresh: bool = False,
        store: SecureStateStore | None = None,
        observer: RunObserver | None = None,
    ) -> WorkflowSession:
        context = prepare_run_context(registry, settings, inputs=inputs, fresh=fresh, store=store)
        return cls(WorkflowRunner(context, observer=observer))

    @property
    def workflow_id(self) -> str:
        return self.runner.runtime.workflow_id

    @property
    def result(self) -> RunResult | None:
        return self._result

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Session already started")
        self._thread = threading.Thread(
            target=self._run,
            name=f"workflow-{self.workflow_id}",
            daemon=True,
        )
        self._thread.start()

    def wait(self, timeout: float | None = None) -> RunResult | None:
        """Block until the run ends; re-raises whatever stopped it abnormally."""

        if not self._done.wait(timeout):
            return None
        if self._error is not None:
            raise self._error
        return self._result

    def cancel(self) -> None:
        self.runner.cancel()

    def submit_decision(self, task_name: str, decision: ApprovalDecision) -> DecisionRecord:
        return self.runner.submit_decision(task_name, decision)

    def view(self) -> WorkflowRuntime:
        return self.runner.view()

    def descriptors(self) -> list[RenderableDescriptor]:
        return [to_renderable(d) for d in self.runner.context.registry.ordered()]

    def pending_gates(self) -> list[str]:
        return self.runner.gates.pending()

    def _run(self) -> None:
        try:
            self._result = self.runner.run()
        except Exception as e:
            logger.exception("Workflow run failed", extra={"workflow_id": self.workflow_id})
            self._error = e
        finally:
            self._done.set()
