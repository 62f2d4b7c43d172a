from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from checkpoint_orchestrator import __version__
from checkpoint_orchestrator.errors import GateNotPendingError, ValidationError
from checkpoint_orchestrator.orchestrator.session import WorkflowSession
from checkpoint_orchestrator.server.config import ServerSettings
from checkpoint_orchestrator.server.models import (
    ApiTask,
    ApiWorkflow,
    DecisionRequest,
    to_api_task,
    to_api_workflow,
)
from checkpoint_orchestrator.workflow.model import ApprovalDecision

logger = logging.getLogger(__name__)


def create_app(session: WorkflowSession, settings: ServerSettings | None = None) -> FastAPI:
    """Expose one workflow session to an external presentation layer.

    The API only reads runtime views and forwards decisions and cancellation;
    it never drives the run itself.
    """

    settings = settings or ServerSettings()

    app = FastAPI(
        title="Checkpoint Orchestrator",
        version=__version__,
        description="Run status and approval decisions for a checkpointed workflow.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    app.state.settings = settings
    app.state.session = session

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    def health() -> dict[str, object]:
        return {"status": "ok", "ok": True, "version": __version__}

    @app.get("/api/workflow", response_model=ApiWorkflow)
    def get_workflow() -> ApiWorkflow:
        return to_api_workflow(session.view(), session.pending_gates())

    @app.get("/api/tasks", response_model=list[ApiTask])
    def list_tasks() -> list[ApiTask]:
        runtime = session.view()
        return [
            to_api_task(descriptor, state)
            for descriptor, state in zip(session.descriptors(), runtime.tasks, strict=True)
        ]

    @app.post("/api/tasks/{task_name}/decision", response_model=ApiTask)
    def submit_decision(task_name: str, request: DecisionRequest) -> ApiTask:
        try:
            session.submit_decision(
                task_name, ApprovalDecision(action=request.action, reason=request.reason)
            )
        except GateNotPendingError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e

        logger.info(
            "Decision accepted via API",
            extra={"task": task_name, "action": request.action.value},
        )
        runtime = session.view()
        for descriptor, state in zip(session.descriptors(), runtime.tasks, strict=True):
            if descriptor.name == task_name:
                return to_api_task(descriptor, state)
        raise HTTPException(status_code=404, detail=f"Unknown task: {task_name}")

    @app.post("/api/workflow/cancel", response_model=ApiWorkflow)
    def cancel_workflow() -> ApiWorkflow:
        session.cancel()
        return to_api_workflow(session.view(), session.pending_gates())

    return app
