"""Snapshot codec: canonical, versioned JSON documents.

The on-disk document mirrors the runtime records field for field. Documents
are strict: unknown fields and missing fields are both rejected, so a
checkpoint written by a different schema never half-loads.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, JsonValue
from pydantic import ValidationError as PydanticValidationError

from checkpoint_orchestrator.errors import SnapshotFormatError
from checkpoint_orchestrator.workflow.model import (
    SCHEMA_VERSION,
    ApprovalAction,
    DecisionRecord,
    OutputLevel,
    OutputLine,
    Principal,
    RestartRecord,
    Snapshot,
    TaskRuntimeState,
    TaskStatus,
    WorkflowRuntime,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_VERSIONS: frozenset[int] = frozenset({SCHEMA_VERSION})


class _Document(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class OutputLineDocument(_Document):
    level: OutputLevel
    text: str
    at: datetime


class DecisionDocument(_Document):
    action: ApprovalAction
    reason: str | None
    decided_at: datetime
    timed_out: bool


class TaskStateDocument(_Document):
    name: str
    status: TaskStatus
    progress_percent: int
    progress_message: str
    output: list[OutputLineDocument]
    error: str | None
    started_at: datetime | None
    ended_at: datetime | None
    decision: DecisionDocument | None
    attempts: int
    pre_completed: bool


class RestartDocument(_Document):
    reason: str
    task_name: str | None
    at: datetime


class RuntimeDocument(_Document):
    workflow_id: str
    tasks: list[TaskStateDocument]
    current_index: int
    status: WorkflowStatus
    started_at: datetime | None
    ended_at: datetime | None
    results: dict[str, JsonValue]
    inputs: dict[str, JsonValue]
    restart_count: int
    restart_history: list[RestartDocument]
    failure_reason: str | None
    log_file: str | None


class PrincipalDocument(_Document):
    user: str
    host: str


class SnapshotDocument(_Document):
    schema_version: int
    workflow_id: str
    runtime: RuntimeDocument
    saved_by: PrincipalDocument
    saved_at: datetime


def encode(snapshot: Snapshot) -> bytes:
    """Serialize a snapshot to canonical UTF-8 JSON."""

    document = _to_document(snapshot)
    payload = document.model_dump(mode="json")
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def decode(data: bytes) -> Snapshot:
    """Parse a canonical document back into a `Snapshot`.

    Raises:
        SnapshotFormatError: not JSON, unsupported or missing schema version, or
            a document that does not match the schema exactly.
    """

    try:
        raw = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SnapshotFormatError(f"Checkpoint is not a JSON document: {e}") from e

    if not isinstance(raw, dict):
        raise SnapshotFormatError("Checkpoint document must be a JSON object")

    version = raw.get("schema_version")
    if version is None:
        raise SnapshotFormatError("Checkpoint document has no schema_version")
    if not isinstance(version, int) or isinstance(version, bool):
        raise SnapshotFormatError(f"Invalid schema_version: {version!r}")
    if version not in SUPPORTED_SCHEMA_VERSIONS:
        raise SnapshotFormatError(
            f"Unsupported schema_version {version}; "
            f"supported: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
        )

    try:
        document = SnapshotDocument.model_validate(raw)
    except PydanticValidationError as e:
        raise SnapshotFormatError(
            f"Checkpoint document does not match schema v{version}: {e.error_count()} error(s)"
        ) from e

    if document.workflow_id != document.runtime.workflow_id:
        raise SnapshotFormatError("Snapshot and runtime disagree on the workflow identity")

    logger.debug(
        "Checkpoint decoded",
        extra={"workflow_id": document.workflow_id, "schema_version": version},
    )
    return _from_document(document)


def _to_document(snapshot: Snapshot) -> SnapshotDocument:
    runtime = snapshot.runtime
    return SnapshotDocument(
        schema_version=snapshot.schema_version,
        workflow_id=snapshot.workflow_id,
        runtime=RuntimeDocument(
            workflow_id=runtime.workflow_id,
            tasks=[_task_document(t) for t in runtime.tasks],
            current_index=runtime.current_index,
            status=runtime.status,
            started_at=runtime.started_at,
            ended_at=runtime.ended_at,
            results=runtime.results,
            inputs=runtime.inputs,
            restart_count=runtime.restart_count,
            restart_history=[
                RestartDocument(reason=r.reason, task_name=r.task_name, at=r.at)
                for r in runtime.restart_history
            ],
            failure_reason=runtime.failure_reason,
            log_file=runtime.log_file,
        ),
        saved_by=PrincipalDocument(user=snapshot.saved_by.user, host=snapshot.saved_by.host),
        saved_at=snapshot.saved_at,
    )


def _task_document(state: TaskRuntimeState) -> TaskStateDocument:
    decision = state.decision
    return TaskStateDocument(
        name=state.name,
        status=state.status,
        progress_percent=state.progress_percent,
        progress_message=state.progress_message,
        output=[OutputLineDocument(level=o.level, text=o.text, at=o.at) for o in state.output],
        error=state.error,
        started_at=state.started_at,
        ended_at=state.ended_at,
        decision=(
            DecisionDocument(
                action=decision.action,
                reason=decision.reason,
                decided_at=decision.decided_at,
                timed_out=decision.timed_out,
            )
            if decision is not None
            else None
        ),
        attempts=state.attempts,
        pre_completed=state.pre_completed,
    )


def _from_document(document: SnapshotDocument) -> Snapshot:
    rt = document.runtime
    runtime = WorkflowRuntime(
        workflow_id=rt.workflow_id,
        tasks=[_task_state(t) for t in rt.tasks],
        current_index=rt.current_index,
        status=rt.status,
        started_at=rt.started_at,
        ended_at=rt.ended_at,
        results=_plain(rt.results),
        inputs=_plain(rt.inputs),
        restart_count=rt.restart_count,
        restart_history=[
            RestartRecord(reason=r.reason, task_name=r.task_name, at=r.at)
            for r in rt.restart_history
        ],
        failure_reason=rt.failure_reason,
        log_file=rt.log_file,
    )
    return Snapshot(
        schema_version=document.schema_version,
        workflow_id=document.workflow_id,
        runtime=runtime,
        saved_by=Principal(user=document.saved_by.user, host=document.saved_by.host),
        saved_at=document.saved_at,
    )


def _task_state(doc: TaskStateDocument) -> TaskRuntimeState:
    return TaskRuntimeState(
        name=doc.name,
        status=doc.status,
        progress_percent=doc.progress_percent,
        progress_message=doc.progress_message,
        output=[OutputLine(level=o.level, text=o.text, at=o.at) for o in doc.output],
        error=doc.error,
        started_at=doc.started_at,
        ended_at=doc.ended_at,
        decision=(
            DecisionRecord(
                action=doc.decision.action,
                reason=doc.decision.reason,
                decided_at=doc.decision.decided_at,
                timed_out=doc.decision.timed_out,
            )
            if doc.decision is not None
            else None
        ),
        attempts=doc.attempts,
        pre_completed=doc.pre_completed,
    )


def _plain(values: dict[str, Any]) -> dict[str, Any]:
    # Detach from the frozen document.
    return json.loads(json.dumps(values))
