"""Drive stage actions through the state machine with retries.

The runner is the caller the state machine expects: it runs the current stage's
action, retries recoverable failures with backoff, turns a successful result
into a transition, and fails the workflow once retries are exhausted.

Each workflow carries a ``generation`` counter that is bumped whenever it is
forced out of ACTIVE (health sweep, cancel, fail). The runner captures the
generation before starting an action and drops the result if it changed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from workflow_coordinator.orchestrator.errors import WorkflowError
from workflow_coordinator.orchestrator.events import EventBus, WorkflowEvents
from workflow_coordinator.orchestrator.metrics import MetricsRecorder
from workflow_coordinator.orchestrator.retry import RetryPolicy, execute_with_retry
from workflow_coordinator.orchestrator.workflow.actions import (
    ACTION_ERROR_KEYS,
    BUILTIN_ACTIONS,
    ActionResult,
    StageAction,
)
from workflow_coordinator.orchestrator.workflow.state_machine import WorkflowStateMachine
from workflow_coordinator.orchestrator.workflow.validation import resolve_path
from workflow_coordinator.state.models import StageSpec, Workflow

logger = logging.getLogger(__name__)

SOURCE = "PipelineRunner"


def undeclared_artifact_kind(spec: StageSpec) -> str:
    """Artifact kind for output of a stage that declares none, e.g. ``jiraFetched``."""

    head, *rest = spec.stage.lower().split("_")
    return head + "".join(part.capitalize() for part in rest)


class StageOutcome(str, Enum):
    ADVANCED = "advanced"
    COMPLETED = "completed"
    FAILED = "failed"
    DROPPED = "dropped"


@dataclass(frozen=True, slots=True)
class StageRunResult:
    outcome: StageOutcome
    stage: str
    attempts: int
    error: str | None = None


class SupersededResultError(Exception):
    """The workflow moved on (or was stopped) while its action was running."""

    # Never retried: maps to a non-recoverable catalogue entry.
    error_code = "WORKFLOW_INACTIVE"


class PipelineRunner:
    def __init__(
        self,
        machine: WorkflowStateMachine,
        event_bus: EventBus,
        policy: RetryPolicy,
        *,
        actions: Mapping[str, StageAction] | None = None,
        metrics: MetricsRecorder | None = None,
        sleep: Callable[[float], object] = time.sleep,
    ) -> None:
        self.machine = machine
        self.event_bus = event_bus
        self.policy = policy
        self.metrics = metrics
        self._sleep = sleep
        self._actions: dict[str, StageAction] = {**BUILTIN_ACTIONS, **(actions or {})}

    def register_action(self, name: str, action: StageAction) -> None:
        self._actions[name] = action

    def _publish(self, event_type: str, workflow: Workflow, **payload: Any) -> None:
        self.event_bus.publish(
            event_type,
            {
                "workflow_id": workflow.id,
                "business_key": workflow.business_key,
                **payload,
                "source": SOURCE,
            },
        )

    def _current(self, workflow_id: str, generation: int) -> Workflow:
        workflow = self.machine.get_workflow(workflow_id)
        if workflow is None or workflow.generation != generation or not workflow.is_active:
            raise SupersededResultError(workflow_id)
        return workflow

    def run_stage(self, workflow_id: str) -> StageRunResult:
        """Run the current stage's action once (with retries) and transition."""

        workflow = self.machine.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowError("WORKFLOW_NOT_FOUND", workflow_id, {"workflow_id": workflow_id})
        if not workflow.is_active:
            raise WorkflowError(
                "WORKFLOW_INACTIVE",
                f"status is {workflow.status.value}",
                {"workflow_id": workflow_id},
            )

        spec = workflow.stage_spec()
        if spec is None:
            raise WorkflowError(
                "WORKFLOW_INACTIVE",
                f"no stage at index {workflow.current_stage_index}",
                {"workflow_id": workflow_id},
            )
        action = self._actions.get(spec.action)
        if action is None:
            raise WorkflowError(
                "INVALID_TEMPLATE",
                f"no action registered for {spec.action}",
                {"workflow_id": workflow_id, "stage": spec.stage},
            )

        generation = workflow.generation
        self._publish(
            WorkflowEvents.AGENT_STARTED,
            workflow,
            stage=spec.stage,
            agent=spec.agent,
            action=spec.action,
        )

        def _attempt() -> Workflow:
            current = self._current(workflow_id, generation)
            snapshot = current.model_copy(deep=True)
            result = action.execute(snapshot, dict(snapshot.artifacts))
            if not result.success:
                raise WorkflowError(
                    ACTION_ERROR_KEYS.get(spec.action, "VALIDATION_FAILED"),
                    result.error or result.message or f"{spec.action} reported failure",
                    {"workflow_id": workflow_id, "stage": spec.stage, "agent": spec.agent},
                )
            return self._apply(workflow_id, generation, spec, result)

        def _record_error(wf_id: str, message: str, details: dict[str, Any]) -> None:
            current = self.machine.get_workflow(wf_id)
            if current is not None and current.generation == generation and current.is_active:
                self.machine.record_error(wf_id, message, details)

        def _on_retry(attempt: int, delay_ms: int, error: BaseException) -> None:
            self._publish(
                WorkflowEvents.STAGE_RETRYING,
                workflow,
                stage=spec.stage,
                attempt=attempt,
                delay_ms=delay_ms,
                error=str(error),
            )

        outcome = execute_with_retry(
            _attempt,
            policy=self.policy,
            workflow_id=workflow_id,
            operation_name=spec.action,
            record_metric=self.metrics.record_metric if self.metrics is not None else None,
            record_error=_record_error,
            on_retry=_on_retry,
            sleep=self._sleep,
        )

        if outcome.success and outcome.value is not None:
            done = not outcome.value.is_active
            return StageRunResult(
                outcome=StageOutcome.COMPLETED if done else StageOutcome.ADVANCED,
                stage=spec.stage,
                attempts=outcome.attempts,
            )

        error_text = str(outcome.error) if outcome.error is not None else "unknown error"
        if isinstance(outcome.error, SupersededResultError):
            logger.info(
                "Dropping result for superseded workflow",
                extra={"workflow_id": workflow_id, "stage": spec.stage, "generation": generation},
            )
            return StageRunResult(
                outcome=StageOutcome.DROPPED,
                stage=spec.stage,
                attempts=outcome.attempts,
                error=error_text,
            )

        current = self.machine.get_workflow(workflow_id)
        if current is not None and current.generation == generation and current.is_active:
            self.machine.fail(
                workflow_id,
                f"{spec.action} failed after {outcome.attempts} attempts: {error_text}",
            )
        return StageRunResult(
            outcome=StageOutcome.FAILED,
            stage=spec.stage,
            attempts=outcome.attempts,
            error=error_text,
        )

    def _apply(
        self, workflow_id: str, generation: int, spec: StageSpec, result: ActionResult
    ) -> Workflow:
        data: dict[str, Any] = dict(result.data or {})
        if result.artifact_ref and spec.artifact:
            data.setdefault(f"{spec.artifact}_path", result.artifact_ref)
        if result.message:
            data.setdefault("message", result.message)

        # Check and transition under one lock so a concurrent sweep cannot
        # slip in between.
        with self.machine.store.lock:
            current = self._current(workflow_id, generation)
            self._publish(
                WorkflowEvents.AGENT_COMPLETED,
                current,
                stage=spec.stage,
                agent=spec.agent,
                action=spec.action,
                message=result.message,
            )
            if result.artifact_ref and not spec.artifact:
                # Stages without a declared artifact kind still keep what they produced.
                ref = resolve_path(result.artifact_ref, self.machine.settings.workspace_root)
                self.machine.record_artifact(workflow_id, undeclared_artifact_kind(spec), str(ref))
            updated = self.machine.transition(workflow_id, data)

            next_spec = updated.stage_spec()
            if updated.is_active and next_spec is not None and next_spec.agent != spec.agent:
                self._publish(
                    WorkflowEvents.AGENT_HANDOFF,
                    updated,
                    from_agent=spec.agent,
                    to_agent=next_spec.agent,
                    stage=next_spec.stage,
                )
            return updated

    def run(self, workflow_id: str, *, max_stages: int = 100) -> list[StageRunResult]:
        """Run stages until the workflow leaves ACTIVE (or ``max_stages`` is hit)."""

        results: list[StageRunResult] = []
        for _ in range(max_stages):
            workflow = self.machine.get_workflow(workflow_id)
            if workflow is None or not workflow.is_active:
                break
            result = self.run_stage(workflow_id)
            results.append(result)
            if result.outcome is not StageOutcome.ADVANCED:
                break
        return results
