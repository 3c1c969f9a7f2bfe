"""Unit tests for coordinator wiring."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping
from pathlib import Path

import pytest

from workflow_coordinator.core.config import CoordinatorSettings
from workflow_coordinator.core.orchestrator import Orchestrator
from workflow_coordinator.orchestrator.workflow.actions import ActionResult, FunctionAction
from workflow_coordinator.state.models import Workflow, WorkflowStatus


def _excel(workflow: Workflow, artifacts: Mapping[str, str]) -> ActionResult:
    return ActionResult(success=True, artifact_ref="test-cases/AOTF-1234.xlsx")


@pytest.fixture
def coordinator(coordinator_settings: CoordinatorSettings) -> Iterator[Orchestrator]:
    orchestrator = Orchestrator(
        coordinator_settings,
        actions={
            "fetch_jira": FunctionAction(lambda wf, a: ActionResult(success=True)),
            "generate_testcases": FunctionAction(_excel),
        },
        configure_logging=False,
    )
    yield orchestrator
    orchestrator.shutdown()


def test_end_to_end_run_is_persisted(
    coordinator: Orchestrator, coordinator_settings: CoordinatorSettings, excel_file: Path
) -> None:
    wf = coordinator.start_workflow("AOTF-1234", "jira-to-testcases")
    coordinator.runner.run(wf.id)
    coordinator.shutdown()

    on_disk = json.loads(coordinator.state_file.read_text(encoding="utf-8"))
    saved = on_disk["workflows"][wf.id]
    assert saved["status"] == "COMPLETED"
    assert saved["businessKey"] == "AOTF-1234"
    assert saved["artifacts"] == {"excel": str(excel_file)}

    reloaded = Orchestrator(coordinator_settings, configure_logging=False)
    try:
        restored = reloaded.machine.get_workflow(wf.id)
        assert restored is not None
        assert restored.status is WorkflowStatus.COMPLETED
        assert len(restored.history) == 4
    finally:
        reloaded.shutdown()


def test_summary_includes_health(coordinator: Orchestrator) -> None:
    wf = coordinator.start_workflow("AOTF-2", "jira-to-testcases")

    summary = coordinator.get_workflow_summary(wf.id)

    assert summary is not None
    assert summary["health"]["recommendation"] == "CONTINUE"
    assert coordinator.get_workflow_summary("missing") is None


def test_statistics_performance_and_analytics(coordinator: Orchestrator) -> None:
    wf = coordinator.start_workflow("AOTF-3", "jira-to-testcases")
    coordinator.machine.cancel(wf.id)

    stats = coordinator.get_statistics()
    assert stats["total"] == 1
    assert stats["cancelled"] == 1

    performance = coordinator.get_performance_metrics()
    assert "save_count" in performance
    assert performance["events"]["event_counts"]["workflow:initialized"] == 1

    analytics = coordinator.get_analytics_summary()
    assert analytics["total_workflows"] == 1
    assert analytics["success_rate"] == "0%"
    started = coordinator.metrics.metrics_for(wf.id)
    assert started[0].type == "workflowStarted"


def test_log_buffer_captures_workflow_logs(
    coordinator: Orchestrator, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO)
    wf = coordinator.start_workflow("AOTF-4", "jira-to-testcases")

    entries = coordinator.log_buffer.entries(workflow_id=wf.id)

    assert any(e["message"] == "Workflow initialized" for e in entries)
