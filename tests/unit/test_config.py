"""Unit tests for configuration."""

import logging
from pathlib import Path

import pytest

from workflow_coordinator.core.config import (
    DEFAULT_STAGE_TIMEOUTS,
    CoordinatorSettings,
    HealthSettings,
    RetrySettings,
    StateSettings,
    WorkflowSettings,
)
from workflow_coordinator.orchestrator.logging import LogBuffer
from workflow_coordinator.server.config import ServerSettings


def test_state_settings_defaults() -> None:
    """Test state config default values."""
    config = StateSettings()

    assert config.storage_path == Path(".state")
    assert config.debounce_ms == 2000
    assert config.max_wait_ms == 10000
    assert config.prefer_async is True
    assert config.metrics_file == Path(".state") / "workflow-metrics.json"


def test_workflow_settings_defaults() -> None:
    """Test workflow config default values."""
    config = WorkflowSettings()

    assert config.required_directories == ["test-cases", "tests/specs"]
    assert config.ticket_pattern == r"^[A-Z]+-\d+$"
    assert config.history_max_entries == 50
    assert config.stale_workflow_hours == 24


def test_retry_and_health_defaults() -> None:
    retry = RetrySettings()
    health = HealthSettings()

    assert (retry.max_retries, retry.base_delay_ms, retry.max_delay_ms) == (3, 1000, 30000)
    assert retry.backoff_multiplier == 2.0
    assert health.stage_timeouts == DEFAULT_STAGE_TIMEOUTS
    assert health.default_timeout_minutes == 5


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that each group honours its own prefix."""
    monkeypatch.setenv("COORDINATOR_STATE_DEBOUNCE_MS", "250")
    monkeypatch.setenv("COORDINATOR_RETRY_MAX_RETRIES", "5")
    monkeypatch.setenv("COORDINATOR_WORKFLOW_TICKET_PATTERN", r"^[A-Z]{2,10}-\d+$")

    assert StateSettings().debounce_ms == 250
    assert RetrySettings().max_retries == 5
    assert WorkflowSettings().ticket_pattern == r"^[A-Z]{2,10}-\d+$"


def test_history_limit_must_leave_room_for_head() -> None:
    with pytest.raises(ValueError):
        WorkflowSettings(history_max_entries=6)
    with pytest.raises(ValueError):
        WorkflowSettings(history_head_entries=10, history_max_entries=7)
    with pytest.raises(ValueError):
        WorkflowSettings(history_head_entries=10, history_max_entries=11)

    assert WorkflowSettings(history_head_entries=10, history_max_entries=12).history_max_entries == 12


def test_coordinator_config_composition(temp_state_dir: Path) -> None:
    """Test coordinator config with nested configs."""
    config = CoordinatorSettings(
        log_level="debug",
        state=StateSettings(storage_path=temp_state_dir),
    )

    assert config.state.storage_path == temp_state_dir
    assert config.log_level_value == logging.DEBUG
    assert isinstance(config.workflow, WorkflowSettings)


def test_setup_logging_installs_buffer() -> None:
    buffer = LogBuffer(10)
    root = logging.getLogger()
    previous = list(root.handlers)
    try:
        CoordinatorSettings(log_level="DEBUG").setup_logging(buffer)
        assert buffer in root.handlers
        assert logging.getLogger("workflow_coordinator").level == logging.DEBUG
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in previous:
            root.addHandler(handler)
        logging.getLogger("workflow_coordinator").setLevel(logging.NOTSET)


def test_server_settings_parse_cors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COORDINATOR_CORS_ORIGINS", "http://a.test, ,http://b.test")
    assert ServerSettings().parsed_cors_origins() == ["http://a.test", "http://b.test"]
