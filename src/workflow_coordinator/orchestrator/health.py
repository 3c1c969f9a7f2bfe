"""Stage-level staleness detection for active workflows.

A workflow is *stale* once it has sat in its current stage (measured from
``updated_at``) longer than that stage's timeout, and *critical* past twice the
timeout. Stale workflows only produce a notification; critical ones are failed
through the state machine, which runs their rollback strategy.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from workflow_coordinator.core.config import HealthSettings
from workflow_coordinator.orchestrator.events import EventBus, WorkflowEvents
from workflow_coordinator.orchestrator.workflow.state_machine import WorkflowStateMachine
from workflow_coordinator.state.models import Workflow, utc_now

logger = logging.getLogger(__name__)

CRITICAL_TIMEOUT_REASON = "Workflow timeout exceeded (critical)"


class Recommendation(str, Enum):
    CONTINUE = "CONTINUE"
    RETRY_STAGE = "RETRY_STAGE"
    ROLLBACK = "ROLLBACK"


@dataclass(frozen=True, slots=True)
class WorkflowHealth:
    workflow_id: str
    business_key: str
    status: str
    current_stage: str
    age_minutes: float
    timeout_minutes: float
    is_healthy: bool
    is_stale: bool
    is_critical: bool
    recommendation: Recommendation
    last_update: str
    errors: int

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["recommendation"] = self.recommendation.value
        out["age_minutes"] = round(self.age_minutes, 2)
        return out


@dataclass(frozen=True, slots=True)
class MonitorAction:
    workflow_id: str
    business_key: str
    action_taken: str
    message: str
    health: WorkflowHealth

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "business_key": self.business_key,
            "action_taken": self.action_taken,
            "message": self.message,
            "health": self.health.to_dict(),
        }


class HealthMonitor:
    def __init__(
        self,
        machine: WorkflowStateMachine,
        settings: HealthSettings,
        event_bus: EventBus | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.machine = machine
        self.settings = settings
        self.event_bus = event_bus
        self._clock = clock
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def timeout_for(self, stage: str) -> float:
        return self.settings.stage_timeouts.get(stage, self.settings.default_timeout_minutes)

    def evaluate(self, workflow: Workflow) -> WorkflowHealth:
        age_minutes = (self._clock() - workflow.updated_at).total_seconds() / 60
        timeout = self.timeout_for(workflow.current_stage)
        is_stale = age_minutes > timeout
        is_critical = age_minutes > timeout * 2

        if is_critical:
            recommendation = Recommendation.ROLLBACK
        elif is_stale:
            recommendation = Recommendation.RETRY_STAGE
        else:
            recommendation = Recommendation.CONTINUE

        return WorkflowHealth(
            workflow_id=workflow.id,
            business_key=workflow.business_key,
            status=workflow.status.value,
            current_stage=workflow.current_stage,
            age_minutes=age_minutes,
            timeout_minutes=timeout,
            is_healthy=workflow.is_active and not is_stale,
            is_stale=is_stale,
            is_critical=is_critical,
            recommendation=recommendation,
            last_update=workflow.updated_at.isoformat(),
            errors=len(workflow.errors),
        )

    def get_workflow_health(self, workflow_id: str) -> WorkflowHealth | None:
        workflow = self.machine.get_workflow(workflow_id)
        if workflow is None:
            return None
        return self.evaluate(workflow)

    def monitor_active_workflows(self) -> list[MonitorAction]:
        """Check every active workflow; fail the critical ones.

        Returns one action per unhealthy workflow.
        """

        actions: list[MonitorAction] = []
        for workflow in self.machine.get_active_workflows():
            health = self.evaluate(workflow)
            if health.is_healthy:
                continue

            if health.recommendation is Recommendation.ROLLBACK:
                self.machine.fail(workflow.id, CRITICAL_TIMEOUT_REASON)
                action = MonitorAction(
                    workflow_id=workflow.id,
                    business_key=workflow.business_key,
                    action_taken="FAILED",
                    message=(
                        f"Workflow {workflow.business_key} timed out and was marked as FAILED"
                    ),
                    health=health,
                )
            else:
                action = MonitorAction(
                    workflow_id=workflow.id,
                    business_key=workflow.business_key,
                    action_taken="NOTIFICATION_SENT",
                    message=(
                        f"Workflow {workflow.business_key} stuck at {health.current_stage} "
                        f"for {int(health.age_minutes)} minutes"
                    ),
                    health=health,
                )

            logger.warning(
                action.message,
                extra={
                    "workflow_id": workflow.id,
                    "business_key": workflow.business_key,
                    "stage": health.current_stage,
                    "action": action.action_taken,
                },
            )
            actions.append(action)
        return actions

    def sweep(self) -> list[MonitorAction]:
        """Run the stale-workflow ceiling and the per-stage health check."""

        cleaned = self.machine.clean_stale_workflows()
        actions = self.monitor_active_workflows()
        if self.event_bus is not None:
            self.event_bus.publish(
                WorkflowEvents.HEALTH_CHECK,
                {
                    "stale_cleaned": cleaned,
                    "actions": [a.to_dict() for a in actions],
                    "source": "HealthMonitor",
                },
            )
        return actions

    # -- background sweeping --------------------------------------------------

    def start(self, interval_seconds: float | None = None) -> None:
        """Sweep periodically on a daemon thread until :meth:`stop` is called."""

        if self._thread is not None and self._thread.is_alive():
            return
        interval = interval_seconds or self.settings.sweep_interval_seconds
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="health-monitor",
            daemon=True,
            kwargs={"interval": interval},
        )
        self._thread.start()
        logger.info("Health monitor started", extra={"interval_seconds": interval})

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None

    def _run(self, *, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Health sweep failed")
