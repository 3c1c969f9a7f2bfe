"""Main coordinator wiring."""

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from workflow_coordinator.core.config import CoordinatorSettings
from workflow_coordinator.orchestrator.events import EventBus
from workflow_coordinator.orchestrator.health import HealthMonitor, MonitorAction
from workflow_coordinator.orchestrator.logging import LogBuffer
from workflow_coordinator.orchestrator.metrics import MetricsRecorder
from workflow_coordinator.orchestrator.retry import RetryPolicy
from workflow_coordinator.orchestrator.workflow.actions import StageAction
from workflow_coordinator.orchestrator.workflow.runner import PipelineRunner
from workflow_coordinator.orchestrator.workflow.state_machine import WorkflowStateMachine
from workflow_coordinator.orchestrator.workflow.templates import TemplateRegistry
from workflow_coordinator.orchestrator.workflow.validation import ValidationRuleRegistry
from workflow_coordinator.state.manager import StateManager
from workflow_coordinator.state.models import Workflow, utc_now

logger = logging.getLogger(__name__)


class Orchestrator:
    """Coordinator for stage-based workflows.

    Builds one instance of each component and passes them to each other by
    reference: event bus, state manager, template and rule registries, state
    machine, health monitor, metrics recorder and pipeline runner.

    The host process owns signal handling and must call :meth:`shutdown` on
    exit so pending state reaches disk.
    """

    def __init__(
        self,
        config: CoordinatorSettings | None = None,
        *,
        event_bus: EventBus | None = None,
        actions: Mapping[str, StageAction] | None = None,
        configure_logging: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the coordinator.

        Args:
            config: Configuration object. If None, loads from environment.
            event_bus: Bus to publish on. A fresh one is created if omitted.
            actions: Stage actions keyed by action name.
            configure_logging: Install the JSON log handler on the root logger.
            clock: Wall clock used for workflow timestamps and health ages.
        """
        self.config = config or CoordinatorSettings()
        self.log_buffer = LogBuffer(self.config.log_buffer_size)
        if configure_logging:
            self.config.setup_logging(self.log_buffer)
        else:
            logging.getLogger().addHandler(self.log_buffer)

        logger.info("Initializing workflow coordinator")

        self.event_bus = event_bus or EventBus(self.config.workflow.event_history_size)
        self.state = StateManager(self.config.state, event_bus=self.event_bus)
        self.state.load()

        self.rules = ValidationRuleRegistry.with_builtins(self.config.workflow.workspace_root)
        self.templates = TemplateRegistry(self.rules)
        self.machine = WorkflowStateMachine(
            self.state,
            self.event_bus,
            self.templates,
            self.rules,
            self.config.workflow,
            clock=clock,
        )
        self.health = HealthMonitor(
            self.machine, self.config.health, self.event_bus, clock=clock
        )
        self.metrics = MetricsRecorder(self.config.state.metrics_file, self.event_bus)
        self.retry_policy = RetryPolicy.from_settings(self.config.retry)
        self.runner = PipelineRunner(
            self.machine,
            self.event_bus,
            self.retry_policy,
            actions=actions,
            metrics=self.metrics,
        )

        logger.info("Workflow coordinator initialized successfully")

    @property
    def state_file(self) -> Path:
        return self.state.state_file

    def start_workflow(
        self,
        business_key: str,
        template_name: str = "jira-to-automation",
        options: Mapping[str, Any] | None = None,
    ) -> Workflow:
        workflow = self.machine.initialize(business_key, template_name, options)
        self.metrics.record_metric(
            workflow.id, "workflowStarted", {"template": template_name, "business_key": business_key}
        )
        return workflow

    def get_workflow_summary(self, workflow_id: str) -> dict[str, Any] | None:
        summary = self.machine.get_workflow_summary(workflow_id)
        if summary is None:
            return None
        health = self.health.get_workflow_health(workflow_id)
        summary["health"] = health.to_dict() if health is not None else None
        return summary

    def sweep(self) -> list[MonitorAction]:
        return self.health.sweep()

    def get_statistics(self) -> dict[str, Any]:
        return self.machine.get_statistics()

    def get_performance_metrics(self) -> dict[str, Any]:
        return {
            **self.state.get_performance_metrics(),
            "events": self.event_bus.get_stats(),
        }

    def get_analytics_summary(self) -> dict[str, Any]:
        return self.metrics.analytics_summary(self.machine.list_workflows())

    def shutdown(self) -> None:
        """Stop background work and write any pending state synchronously."""

        logger.info("Shutting down workflow coordinator")
        self.health.stop()
        self.state.shutdown()
        logging.getLogger().removeHandler(self.log_buffer)
