"""FastAPI app factory.

Endpoints are thin, read-mostly wrappers over a running :class:`Orchestrator`.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from workflow_coordinator import __version__
from workflow_coordinator.core.orchestrator import Orchestrator
from workflow_coordinator.server.config import ServerSettings
from workflow_coordinator.server.models import (
    ApiEvent,
    ApiHealth,
    ApiSweepResult,
    ApiWorkflow,
    ApiWorkflowDetail,
)
from workflow_coordinator.state.models import Workflow, WorkflowStatus

logger = logging.getLogger(__name__)


def _to_api_workflow(workflow: Workflow) -> ApiWorkflow:
    return ApiWorkflow(
        id=workflow.id,
        business_key=workflow.business_key,
        template_name=workflow.template_name,
        status=workflow.status.value,
        current_stage=workflow.current_stage,
        current_stage_index=workflow.current_stage_index,
        started_at=workflow.started_at.isoformat(),
        updated_at=workflow.updated_at.isoformat(),
        completed_at=workflow.completed_at.isoformat() if workflow.completed_at else None,
        artifacts=dict(workflow.artifacts),
        error_count=len(workflow.errors),
    )


def create_app(
    orchestrator: Orchestrator | None = None, settings: ServerSettings | None = None
) -> FastAPI:
    settings = settings or ServerSettings()
    coordinator = orchestrator or Orchestrator()

    app = FastAPI(
        title="Workflow Coordinator",
        version=__version__,
        description="Status API over the workflow coordinator.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )
    app.state.settings = settings
    app.state.orchestrator = coordinator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health", response_model=ApiHealth)
    def health() -> ApiHealth:
        return ApiHealth(
            status="ok",
            active_workflows=len(coordinator.machine.get_active_workflows()),
            state_dirty=coordinator.state.is_dirty,
        )

    @app.get("/api/workflows", response_model=list[ApiWorkflow])
    def list_workflows(status: WorkflowStatus | None = None) -> list[ApiWorkflow]:
        return [_to_api_workflow(w) for w in coordinator.machine.list_workflows(status)]

    @app.get("/api/workflows/{workflow_id}", response_model=ApiWorkflowDetail)
    def get_workflow(workflow_id: str) -> ApiWorkflowDetail:
        workflow = coordinator.machine.get_workflow(workflow_id)
        summary = coordinator.get_workflow_summary(workflow_id)
        if workflow is None or summary is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        base = _to_api_workflow(workflow)
        return ApiWorkflowDetail(
            **base.model_dump(),
            progress=summary["progress"],
            duration=summary["duration"],
            history=[h.model_dump(mode="json") for h in workflow.history],
            errors=[e.model_dump(mode="json") for e in workflow.errors],
            health=summary["health"],
        )

    @app.get("/api/workflows/{workflow_id}/health")
    def get_workflow_health(workflow_id: str) -> dict[str, Any]:
        result = coordinator.health.get_workflow_health(workflow_id)
        if result is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return result.to_dict()

    @app.get("/api/statistics")
    def statistics() -> dict[str, Any]:
        return {
            **coordinator.get_statistics(),
            "performance": coordinator.get_performance_metrics(),
        }

    @app.get("/api/analytics")
    def analytics() -> dict[str, Any]:
        return coordinator.get_analytics_summary()

    @app.get("/api/events", response_model=list[ApiEvent])
    def events(
        type: str | None = None,  # noqa: A002 (query parameter name)
        limit: int = Query(default=50, ge=1, le=1000),
    ) -> list[ApiEvent]:
        return [
            ApiEvent.model_validate(e.to_dict())
            for e in coordinator.event_bus.get_history(type, limit)
        ]

    @app.post("/api/sweep", response_model=ApiSweepResult)
    def sweep() -> ApiSweepResult:
        actions = coordinator.sweep()
        logger.info("Sweep requested via API", extra={"action_count": len(actions)})
        return ApiSweepResult(actions=[a.to_dict() for a in actions])

    return app
