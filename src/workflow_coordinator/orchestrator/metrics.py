"""Append-only workflow metrics and derived analytics.

Metrics are observability data: they are derived from what the coordinator
does and are never consulted to decide workflow state. A missing or unreadable
metrics file simply starts a fresh log.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from workflow_coordinator.orchestrator.events import EventBus, WorkflowEvents
from workflow_coordinator.state.models import Workflow, WorkflowStatus

logger = logging.getLogger(__name__)

METRICS_VERSION = "1.0.0"


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


class MetricEntry(BaseModel):
    type: str
    timestamp: str = Field(default_factory=_utc_iso_now)
    data: dict[str, Any] = Field(default_factory=dict)


class WorkflowMetrics(BaseModel):
    started_at: str = Field(default_factory=_utc_iso_now, alias="startedAt")
    metrics: list[MetricEntry] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class AggregateMetric(BaseModel):
    count: int = 0
    total: float = 0


class MetricsDocument(BaseModel):
    version: str = METRICS_VERSION
    workflows: dict[str, WorkflowMetrics] = Field(default_factory=dict)
    aggregate: dict[str, AggregateMetric] = Field(default_factory=dict)
    last_updated: str = Field(default_factory=_utc_iso_now, alias="lastUpdated")

    model_config = {"populate_by_name": True}


def format_duration(ms: float) -> str:
    """Render milliseconds as ``"<m>m <s>s"``."""

    total_ms = max(int(ms), 0)
    minutes = total_ms // 60000
    seconds = (total_ms % 60000) // 1000
    return f"{minutes}m {seconds}s"


@dataclass
class MetricsRecorder:
    path: Path
    event_bus: EventBus | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _load_unlocked(self) -> MetricsDocument:
        if not self.path.exists():
            return MetricsDocument()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return MetricsDocument.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning("Failed to load metrics", extra={"path": str(self.path), "error": str(e)})
            return MetricsDocument()

    def _save_unlocked(self, doc: MetricsDocument) -> None:
        doc.last_updated = _utc_iso_now()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                doc.model_dump_json(by_alias=True, indent=2) + "\n", encoding="utf-8"
            )
        except OSError as e:
            logger.warning("Failed to save metrics", extra={"path": str(self.path), "error": str(e)})

    def load(self) -> MetricsDocument:
        with self._lock:
            return self._load_unlocked()

    def record_metric(
        self, workflow_id: str, metric_type: str, data: dict[str, Any] | None = None
    ) -> MetricEntry:
        entry = MetricEntry(type=metric_type, data=dict(data or {}))
        with self._lock:
            doc = self._load_unlocked()
            doc.workflows.setdefault(workflow_id, WorkflowMetrics()).metrics.append(entry)
            aggregate = doc.aggregate.setdefault(metric_type, AggregateMetric())
            aggregate.count += 1
            value = entry.data.get("value")
            if isinstance(value, int | float):
                aggregate.total += value
            self._save_unlocked(doc)

        logger.debug(
            "Metric recorded",
            extra={"workflow_id": workflow_id, "metric_type": metric_type},
        )
        if self.event_bus is not None:
            self.event_bus.publish(
                WorkflowEvents.METRICS_UPDATED,
                {
                    "workflow_id": workflow_id,
                    "metric_type": metric_type,
                    "source": "MetricsRecorder",
                },
            )
        return entry

    def metrics_for(self, workflow_id: str) -> list[MetricEntry]:
        doc = self.load()
        record = doc.workflows.get(workflow_id)
        return list(record.metrics) if record else []

    def analytics_summary(self, workflows: Iterable[Workflow]) -> dict[str, Any]:
        """Success rate, average duration and retry totals across ``workflows``."""

        items = list(workflows)
        doc = self.load()

        completed = [w for w in items if w.status is WorkflowStatus.COMPLETED]
        failed = [w for w in items if w.status is WorkflowStatus.FAILED]

        total_ms = sum(
            (w.completed_at - w.started_at).total_seconds() * 1000
            for w in completed
            if w.completed_at is not None
        )
        avg_ms = total_ms / len(completed) if completed else 0

        finished = len(completed) + len(failed)
        success_rate = round(len(completed) / finished * 100) if finished else 0

        return {
            "total_workflows": len(items),
            "completed": len(completed),
            "failed": len(failed),
            "active": sum(1 for w in items if w.is_active),
            "success_rate": f"{success_rate}%",
            "avg_duration": format_duration(avg_ms),
            "retry_stats": doc.aggregate.get("retryAttempt", AggregateMetric()).model_dump(),
            "retry_successes": doc.aggregate.get("retrySuccess", AggregateMetric()).model_dump(),
            "last_updated": doc.last_updated,
        }
