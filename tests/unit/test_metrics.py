"""Unit tests for the metrics recorder and analytics summary."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

from workflow_coordinator.orchestrator.events import EventBus, WorkflowEvents
from workflow_coordinator.orchestrator.metrics import MetricsRecorder, format_duration
from workflow_coordinator.orchestrator.workflow.templates import JIRA_TO_TESTCASES
from workflow_coordinator.state.models import Workflow, WorkflowStatus


def _workflow(key: str, status: WorkflowStatus, minutes: float | None = None) -> Workflow:
    started = datetime(2024, 1, 1, tzinfo=UTC)
    return Workflow(
        id=f"{key}-1",
        business_key=key,
        template_name=JIRA_TO_TESTCASES.name,
        template=JIRA_TO_TESTCASES,
        status=status,
        current_stage="PENDING",
        started_at=started,
        completed_at=started + timedelta(minutes=minutes) if minutes is not None else None,
    )


def test_format_duration() -> None:
    assert format_duration(0) == "0m 0s"
    assert format_duration(61_500) == "1m 1s"
    assert format_duration(-5) == "0m 0s"


def test_record_metric_persists_and_aggregates(tmp_path: Path) -> None:
    bus = EventBus()
    recorder = MetricsRecorder(tmp_path / "metrics.json", bus)

    recorder.record_metric("wf-1", "stageDuration", {"value": 1500})
    recorder.record_metric("wf-1", "stageDuration", {"value": 500})
    recorder.record_metric("wf-2", "workflowStarted")

    doc = json.loads((tmp_path / "metrics.json").read_text(encoding="utf-8"))
    assert doc["version"] == "1.0.0"
    assert doc["aggregate"]["stageDuration"] == {"count": 2, "total": 2000}
    assert len(doc["workflows"]["wf-1"]["metrics"]) == 2
    assert "startedAt" in doc["workflows"]["wf-1"]
    assert "lastUpdated" in doc

    assert [m.type for m in recorder.metrics_for("wf-2")] == ["workflowStarted"]
    assert recorder.metrics_for("missing") == []
    assert len(bus.get_history(WorkflowEvents.METRICS_UPDATED)) == 3


def test_unreadable_metrics_file_starts_fresh(tmp_path: Path) -> None:
    path = tmp_path / "metrics.json"
    path.write_text("garbage", encoding="utf-8")
    recorder = MetricsRecorder(path)

    recorder.record_metric("wf-1", "retryAttempt", {"attempt": 1})

    assert recorder.load().aggregate["retryAttempt"].count == 1


def test_analytics_summary(tmp_path: Path) -> None:
    recorder = MetricsRecorder(tmp_path / "metrics.json")
    recorder.record_metric("wf-1", "retryAttempt", {"attempt": 1})
    recorder.record_metric("wf-1", "retrySuccess", {"attempts": 2})

    workflows = [
        _workflow("AOTF-1", WorkflowStatus.COMPLETED, minutes=2),
        _workflow("AOTF-2", WorkflowStatus.COMPLETED, minutes=4),
        _workflow("AOTF-3", WorkflowStatus.FAILED, minutes=1),
        _workflow("AOTF-4", WorkflowStatus.ACTIVE),
    ]

    summary = recorder.analytics_summary(workflows)

    assert summary["total_workflows"] == 4
    assert summary["completed"] == 2
    assert summary["failed"] == 1
    assert summary["active"] == 1
    assert summary["success_rate"] == "67%"
    assert summary["avg_duration"] == "3m 0s"
    assert summary["retry_stats"]["count"] == 1
    assert summary["retry_successes"]["count"] == 1


def test_analytics_summary_with_no_finished_workflows(tmp_path: Path) -> None:
    summary = MetricsRecorder(tmp_path / "metrics.json").analytics_summary([])
    assert summary["success_rate"] == "0%"
    assert summary["avg_duration"] == "0m 0s"
