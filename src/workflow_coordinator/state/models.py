"""Persisted workflow state models.

The on-disk document is human-diffable JSON using camelCase keys:

    {version, lastUpdated, workflows: {id: Workflow}, archived: [ArchivedWorkflow]}
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

STATE_VERSION = "2.2.0"


def utc_now() -> datetime:
    return datetime.now(UTC)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkflowStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not WorkflowStatus.ACTIVE


class WorkflowStage:
    """Well-known stage names used by the built-in templates."""

    PENDING = "PENDING"
    JIRA_FETCHED = "JIRA_FETCHED"
    TESTCASES_GENERATED = "TESTCASES_GENERATED"
    EXCEL_CREATED = "EXCEL_CREATED"
    SCRIPT_EXPLORATION = "SCRIPT_EXPLORATION"
    SCRIPT_GENERATED = "SCRIPT_GENERATED"
    SCRIPT_EXECUTED = "SCRIPT_EXECUTED"
    BUG_REPORTED = "BUG_REPORTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"
    CANCELLED = "CANCELLED"
    HISTORY_TRIMMED = "HISTORY_TRIMMED"


class Agent:
    ORCHESTRATOR = "orchestrator"
    TESTGENIE = "testgenie"
    SCRIPTGENERATOR = "scriptgenerator"
    BUGGENIE = "buggenie"


class StageSpec(_CamelModel):
    """One step of a template."""

    model_config = ConfigDict(frozen=True)

    stage: str
    agent: str
    action: str
    validation_rule: str | None = None
    prerequisites: tuple[str, ...] = ()
    # Artifact kind produced by this stage; recorded from ``<kind>_path`` in the
    # transition data once the stage's validation passes.
    artifact: str | None = None
    terminal: bool = False


class RollbackStrategy(_CamelModel):
    model_config = ConfigDict(frozen=True)

    artifacts_to_keep: tuple[str, ...] = ()
    keep_error_logs: bool = True
    cleanup_patterns: tuple[str, ...] = ()


class WorkflowTemplate(_CamelModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    stages: tuple[StageSpec, ...]
    rollback_strategy: RollbackStrategy | None = None

    def stage_names(self) -> list[str]:
        return [s.stage for s in self.stages]


class HistoryEntry(_CamelModel):
    stage: str
    timestamp: datetime = Field(default_factory=utc_now)
    agent: str = Agent.ORCHESTRATOR
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class ErrorRecord(_CamelModel):
    timestamp: datetime = Field(default_factory=utc_now)
    stage: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class Workflow(_CamelModel):
    """Aggregate root for one unit of work (typically one ticket)."""

    id: str
    business_key: str
    template_name: str
    template: WorkflowTemplate
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    current_stage: str
    current_stage_index: int = 0
    started_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    artifacts: dict[str, str] = Field(default_factory=dict)
    history: list[HistoryEntry] = Field(default_factory=list)
    errors: list[ErrorRecord] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)

    # Bumped whenever the workflow is forced out of ACTIVE, so late results of
    # stage actions started before that point can be recognised and dropped.
    generation: int = 0

    @property
    def is_active(self) -> bool:
        return self.status is WorkflowStatus.ACTIVE

    @property
    def total_stages(self) -> int:
        return len(self.template.stages)

    def stage_spec(self, index: int | None = None) -> StageSpec | None:
        idx = self.current_stage_index if index is None else index
        if 0 <= idx < len(self.template.stages):
            return self.template.stages[idx]
        return None


class ArchivedWorkflow(_CamelModel):
    id: str
    business_key: str
    status: WorkflowStatus
    started_at: datetime
    completed_at: datetime | None = None
    archived_at: datetime = Field(default_factory=utc_now)


class WorkflowStateDocument(_CamelModel):
    version: str = STATE_VERSION
    last_updated: datetime = Field(default_factory=utc_now)
    workflows: dict[str, Workflow] = Field(default_factory=dict)
    archived: list[ArchivedWorkflow] = Field(default_factory=list)
