"""Test configuration and fixtures."""

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from workflow_coordinator.core.config import (
    CoordinatorSettings,
    HealthSettings,
    RetrySettings,
    StateSettings,
    WorkflowSettings,
)
from workflow_coordinator.orchestrator.events import Event, EventBus
from workflow_coordinator.orchestrator.workflow.state_machine import WorkflowStateMachine
from workflow_coordinator.orchestrator.workflow.templates import TemplateRegistry
from workflow_coordinator.orchestrator.workflow.validation import ValidationRuleRegistry
from workflow_coordinator.state.manager import StateManager


class FakeClock:
    """Settable wall clock for time-dependent rules."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 15, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / ".state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Provide a workspace with the required directories in place."""
    root = tmp_path / "workspace"
    (root / "test-cases").mkdir(parents=True)
    (root / "tests" / "specs").mkdir(parents=True)
    return root


@pytest.fixture
def state_settings(temp_state_dir: Path) -> StateSettings:
    """Provide a test state configuration with inline writes."""
    return StateSettings(
        storage_path=temp_state_dir,
        debounce_ms=50,
        max_wait_ms=10000,
        prefer_async=False,
    )


@pytest.fixture
def workflow_settings(workspace: Path) -> WorkflowSettings:
    """Provide a test workflow configuration rooted at the workspace."""
    return WorkflowSettings(workspace_root=workspace)


@pytest.fixture
def coordinator_settings(
    state_settings: StateSettings, workflow_settings: WorkflowSettings
) -> CoordinatorSettings:
    """Provide a test coordinator configuration."""
    return CoordinatorSettings(
        log_level="DEBUG",
        state=state_settings,
        workflow=workflow_settings,
        retry=RetrySettings(max_retries=3, base_delay_ms=0, max_delay_ms=0),
        health=HealthSettings(),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus(max_history=500)


@pytest.fixture
def recorded_events(event_bus: EventBus) -> list[Event]:
    """Every event published on ``event_bus``, in delivery order."""
    events: list[Event] = []
    event_bus.subscribe("*", "test-recorder", events.append)
    return events


@pytest.fixture
def store(state_settings: StateSettings, event_bus: EventBus) -> Iterator[StateManager]:
    manager = StateManager(state_settings, event_bus=event_bus)
    manager.load()
    yield manager
    manager.shutdown()


@pytest.fixture
def rules(workspace: Path) -> ValidationRuleRegistry:
    return ValidationRuleRegistry.with_builtins(workspace)


@pytest.fixture
def templates(rules: ValidationRuleRegistry) -> TemplateRegistry:
    return TemplateRegistry(rules)


@pytest.fixture
def machine(
    store: StateManager,
    event_bus: EventBus,
    templates: TemplateRegistry,
    rules: ValidationRuleRegistry,
    workflow_settings: WorkflowSettings,
    clock: FakeClock,
) -> WorkflowStateMachine:
    return WorkflowStateMachine(
        store, event_bus, templates, rules, workflow_settings, clock=clock
    )


@pytest.fixture
def excel_file(workspace: Path) -> Path:
    """A non-empty workbook under ``test-cases/``."""
    path = workspace / "test-cases" / "AOTF-1234.xlsx"
    path.write_bytes(b"PK\x03\x04 workbook")
    return path
