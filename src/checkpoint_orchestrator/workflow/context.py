"""Explicit contexts: one per run, one per task attempt.

`RunContext` replaces any notion of a global "current run": the runner receives
it and every collaborator gets what it needs from it. `TaskContext` is the only
thing a task body sees.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from pydantic import JsonValue, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from checkpoint_orchestrator.errors import TaskCancelledError, ValidationError
from checkpoint_orchestrator.workflow.model import (
    OutputLevel,
    OutputLine,
    Principal,
    TaskDescriptor,
    TaskRuntimeState,
    WorkflowRuntime,
    utc_now,
)

if TYPE_CHECKING:
    from checkpoint_orchestrator.orchestrator.config import OrchestratorSettings
    from checkpoint_orchestrator.state.secure_store import SecureStateStore
    from checkpoint_orchestrator.workflow.observer import RunObserver
    from checkpoint_orchestrator.workflow.registry import TaskRegistry

logger = logging.getLogger(__name__)
task_logger = logging.getLogger("checkpoint_orchestrator.task")

_JSON_VALUE: TypeAdapter[JsonValue] = TypeAdapter(JsonValue)

_LOG_LEVELS = {
    OutputLevel.INFO: logging.INFO,
    OutputLevel.WARN: logging.WARNING,
    OutputLevel.ERROR: logging.ERROR,
}


def ensure_json_value(key: str, value: Any) -> JsonValue:
    """Validate that a carried-forward value can be checkpointed."""

    try:
        validated = _JSON_VALUE.validate_python(value)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Result value for {key!r} is not JSON-compatible ({type(value).__name__})"
        ) from e
    return copy.deepcopy(validated)


@dataclass(slots=True)
class RunContext:
    """Everything one workflow run operates on."""

    registry: TaskRegistry
    runtime: WorkflowRuntime
    store: SecureStateStore
    settings: OrchestratorSettings
    principal: Principal = field(default_factory=Principal.current)


class TaskContext:
    """Handle passed to a task body for one execution attempt.

    Writes go straight into the task's runtime state under the run lock. Once
    the attempt is closed (finished, timed out or abandoned) further writes are
    dropped so a stray worker cannot alter runner state.
    """

    def __init__(
        self,
        *,
        descriptor: TaskDescriptor,
        index: int,
        total: int,
        state: TaskRuntimeState,
        runtime: WorkflowRuntime,
        lock: threading.RLock,
        cancel_event: threading.Event,
        observer: RunObserver,
        suspend: Callable[[str], None],
        auto_progress: bool = True,
    ) -> None:
        self._descriptor = descriptor
        self._index = index
        self._total = total
        self._state = state
        self._runtime = runtime
        self._lock = lock
        self._cancel = cancel_event
        self._observer = observer
        self._suspend = suspend
        self._auto_progress = auto_progress

        self._closed = False
        self._manual_progress = False
        self._lines_written = 0
        self._skip_reason: str | None = None

    @property
    def name(self) -> str:
        return self._descriptor.name

    @property
    def title(self) -> str:
        return self._descriptor.title

    @property
    def index(self) -> int:
        return self._index

    @property
    def total(self) -> int:
        return self._total

    @property
    def inputs(self) -> Mapping[str, Any]:
        with self._lock:
            return MappingProxyType(copy.deepcopy(self._runtime.inputs))

    @property
    def arguments(self) -> Mapping[str, Any]:
        return MappingProxyType(dict(self._descriptor.arguments))

    def get_input(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return copy.deepcopy(self._runtime.inputs.get(key, default))

    # Output and progress

    def write(self, text: str, level: OutputLevel | str = OutputLevel.INFO) -> None:
        line = OutputLine(level=OutputLevel(level), text=str(text), at=utc_now())
        progress: tuple[int, str] | None = None
        with self._lock:
            if self._closed:
                logger.debug("Dropped output after attempt closed", extra={"task": self.name})
                return
            self._state.output.append(line)
            if self._auto_progress and not self._manual_progress:
                self._lines_written += 1
                progress = self._apply_progress(min(90, 5 + self._lines_written * 10), None)

        task_logger.log(
            _LOG_LEVELS[line.level], line.text, extra={"task": self.name, "level_tag": line.level.value}
        )
        self._observer.on_output(self.name, line)
        if progress is not None:
            self._observer.on_progress(self.name, *progress)

    def info(self, text: str) -> None:
        self.write(text, OutputLevel.INFO)

    def warn(self, text: str) -> None:
        self.write(text, OutputLevel.WARN)

    def error(self, text: str) -> None:
        self.write(text, OutputLevel.ERROR)

    def set_progress(self, percent: float, message: str | None = None) -> None:
        with self._lock:
            if self._closed:
                return
            self._manual_progress = True
            progress = self._apply_progress(percent, message)
        self._observer.on_progress(self.name, *progress)

    def set_status(self, message: str) -> None:
        with self._lock:
            if self._closed:
                return
            progress = self._apply_progress(self._state.progress_percent, message)
        self._observer.on_progress(self.name, *progress)

    def _apply_progress(self, percent: float, message: str | None) -> tuple[int, str]:
        # Caller holds the lock. Progress never moves backwards within an attempt:
        # lower values are clamped up to the current one.
        value = max(0, min(100, int(percent)))
        if value < self._state.progress_percent:
            logger.debug(
                "Progress update clamped",
                extra={"task": self.name, "requested": value, "current": self._state.progress_percent},
            )
            value = self._state.progress_percent
        self._state.progress_percent = value
        if message:
            self._state.progress_message = message
        return value, self._state.progress_message

    # Cancellation

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def raise_if_cancelled(self) -> None:
        if self._cancel.is_set():
            raise TaskCancelledError(f"Task '{self.name}' was asked to stop")

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if cancellation was signalled."""

        return self._cancel.wait(seconds)

    # Shared workflow data

    def set_result(self, key: str, value: Any) -> None:
        if not key:
            raise ValidationError("Result key must not be empty")
        validated = ensure_json_value(key, value)
        with self._lock:
            if self._closed:
                return
            self._runtime.results[key] = validated
        logger.info("Workflow data set", extra={"task": self.name, "key": key})

    def get_result(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return copy.deepcopy(self._runtime.results.get(key, default))

    def has_result(self, key: str) -> bool:
        with self._lock:
            return key in self._runtime.results

    def result_keys(self) -> list[str]:
        with self._lock:
            return list(self._runtime.results)

    # Flow control

    def request_suspend(self, reason: str) -> None:
        """Checkpoint now and stop; this task re-runs from its start on resume.

        Raises `TaskCancelledError` once the attempt is closed, so a worker
        abandoned after a timeout cannot suspend whichever task runs next.
        """

        # Held across the call: the attempt cannot close while the suspend is
        # being written.
        with self._lock:
            if self._closed:
                logger.warning(
                    "Suspend request ignored; attempt already closed", extra={"task": self.name}
                )
                raise TaskCancelledError(f"Task '{self.name}' is no longer running")
            self._suspend(reason or "Restart required to continue")

    def skip(self, reason: str) -> None:
        with self._lock:
            self._skip_reason = reason or "Skipped by task"
        logger.info("Skip requested", extra={"task": self.name, "reason": self._skip_reason})

    @property
    def skip_reason(self) -> str | None:
        return self._skip_reason

    def close(self) -> None:
        with self._lock:
            self._closed = True
