from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING

import pytest
from fastapi.testclient import TestClient

from workflow_coordinator.core.config import CoordinatorSettings
from workflow_coordinator.core.orchestrator import Orchestrator
from workflow_coordinator.server.app import create_app

if TYPE_CHECKING:
    from conftest import FakeClock


@pytest.fixture
def coordinator(
    coordinator_settings: CoordinatorSettings, clock: FakeClock
) -> Iterator[Orchestrator]:
    orchestrator = Orchestrator(coordinator_settings, configure_logging=False, clock=clock)
    yield orchestrator
    orchestrator.shutdown()


@pytest.fixture
def client(coordinator: Orchestrator) -> TestClient:
    return TestClient(create_app(coordinator))


def test_health_and_docs(client: TestClient, coordinator: Orchestrator) -> None:
    coordinator.start_workflow("AOTF-1", "jira-to-testcases")

    r = client.get("/api/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["active_workflows"] == 1

    assert client.get("/api/openapi.json").status_code == 200


def test_workflow_list_detail_and_health(client: TestClient, coordinator: Orchestrator) -> None:
    wf = coordinator.start_workflow("AOTF-2", "jira-to-testcases")
    other = coordinator.start_workflow("AOTF-3", "jira-to-testcases")
    coordinator.machine.cancel(other.id)

    listed = client.get("/api/workflows").json()
    assert {w["id"] for w in listed} == {wf.id, other.id}

    cancelled = client.get("/api/workflows", params={"status": "CANCELLED"}).json()
    assert [w["id"] for w in cancelled] == [other.id]

    detail = client.get(f"/api/workflows/{wf.id}").json()
    assert detail["business_key"] == "AOTF-2"
    assert detail["progress"] == "0/4 (0%)"
    assert detail["history"][0]["message"] == "Workflow initialized successfully"
    assert detail["health"]["is_healthy"] is True

    health = client.get(f"/api/workflows/{wf.id}/health").json()
    assert health["current_stage"] == "PENDING"

    assert client.get("/api/workflows/missing").status_code == 404
    assert client.get("/api/workflows/missing/health").status_code == 404


def test_statistics_analytics_and_events(client: TestClient, coordinator: Orchestrator) -> None:
    coordinator.start_workflow("AOTF-4", "jira-to-testcases")

    stats = client.get("/api/statistics").json()
    assert stats["total"] == 1
    assert "save_count" in stats["performance"]

    analytics = client.get("/api/analytics").json()
    assert analytics["active"] == 1

    events = client.get("/api/events", params={"type": "workflow:initialized"}).json()
    assert len(events) == 1
    assert events[0]["payload"]["business_key"] == "AOTF-4"

    assert client.get("/api/events", params={"limit": 0}).status_code == 422


def test_sweep_fails_critical_workflows(
    client: TestClient, coordinator: Orchestrator, clock: FakeClock
) -> None:
    wf = coordinator.start_workflow("AOTF-5", "jira-to-testcases")
    clock.advance(minutes=3)

    r = client.post("/api/sweep")

    assert r.status_code == 200
    actions = r.json()["actions"]
    assert [a["action_taken"] for a in actions] == ["FAILED"]
    assert coordinator.machine.get_workflow(wf.id).status.value == "FAILED"  # type: ignore[union-attr]
