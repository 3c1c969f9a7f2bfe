"""Core configuration for the workflow coordinator.

Configuration is loaded from environment variables and a local `.env` file
(if present). Each group has its own prefix, e.g. ``COORDINATOR_STATE_DEBOUNCE_MS``.
"""

import logging
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from workflow_coordinator.orchestrator.logging import LogBuffer, configure_logging

DEFAULT_STAGE_TIMEOUTS: dict[str, float] = {
    "PENDING": 1,
    "JIRA_FETCHED": 1,
    "TESTCASES_GENERATED": 2,
    "EXCEL_CREATED": 1,
    "SCRIPT_EXPLORATION": 5,
    "SCRIPT_GENERATED": 3,
    "SCRIPT_EXECUTED": 10,
}


class StateSettings(BaseSettings):
    """Configuration for durable state and its debounced writer."""

    storage_path: Path = Field(
        default=Path(".state"),
        description="Directory holding the state and metrics documents",
    )
    state_file_name: str = Field(default="workflow-state.json")
    metrics_file_name: str = Field(default="workflow-metrics.json")
    debounce_ms: int = Field(
        default=2000,
        ge=0,
        description="Quiet period before coalesced changes are written",
    )
    max_wait_ms: int = Field(
        default=10000,
        ge=0,
        description="Force a write once this long has passed since the last one",
    )
    prefer_async: bool = Field(
        default=True,
        description="Write on a background writer thread instead of inline",
    )

    model_config = SettingsConfigDict(
        env_prefix="COORDINATOR_STATE_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def metrics_file(self) -> Path:
        return self.storage_path / self.metrics_file_name


class WorkflowSettings(BaseSettings):
    """Configuration for workflow lifecycle rules."""

    workspace_root: Path = Field(
        default=Path("."),
        description="Root that required directories are resolved against",
    )
    required_directories: list[str] = Field(
        default_factory=lambda: ["test-cases", "tests/specs"],
        description="Directories that must exist before a workflow can start",
    )
    ticket_pattern: str = Field(default=r"^[A-Z]+-\d+$")
    mcp_config_files: list[str] = Field(
        default_factory=lambda: [".vscode/mcp.json", "mcp-config.json"],
        description="Workspace files checked for MCP server entries",
    )
    history_max_entries: int = Field(default=50, gt=6)
    history_head_entries: int = Field(default=5, ge=1)
    archive_max_age_days: float = Field(default=30, gt=0)
    archive_max_entries: int = Field(default=100, gt=0)
    stale_workflow_hours: float = Field(default=24, gt=0)
    event_history_size: int = Field(default=100, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="COORDINATOR_WORKFLOW_",
        env_file=".env",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _history_leaves_room_for_tail(self) -> "WorkflowSettings":
        if self.history_max_entries <= self.history_head_entries + 1:
            raise ValueError(
                "history_max_entries must exceed history_head_entries + 1 "
                f"(got {self.history_max_entries} with head {self.history_head_entries})"
            )
        return self


class RetrySettings(BaseSettings):
    """Exponential backoff parameters for stage actions."""

    max_retries: int = Field(default=3, ge=1)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=30000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)

    model_config = SettingsConfigDict(
        env_prefix="COORDINATOR_RETRY_",
        env_file=".env",
        extra="ignore",
    )


class HealthSettings(BaseSettings):
    """Per-stage staleness thresholds (minutes)."""

    default_timeout_minutes: float = Field(default=5, gt=0)
    sweep_interval_seconds: float = Field(
        default=60,
        gt=0,
        description="Interval of the background health sweep",
    )
    stage_timeouts: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_STAGE_TIMEOUTS)
    )

    model_config = SettingsConfigDict(
        env_prefix="COORDINATOR_HEALTH_",
        env_file=".env",
        extra="ignore",
    )


class CoordinatorSettings(BaseSettings):
    """Main configuration for the coordinator."""

    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_buffer_size: int = Field(
        default=1000,
        gt=0,
        description="Number of recent log records kept in memory",
    )

    state: StateSettings = Field(
        default_factory=StateSettings,
        description="State configuration",
    )
    workflow: WorkflowSettings = Field(
        default_factory=WorkflowSettings,
        description="Workflow configuration",
    )
    retry: RetrySettings = Field(
        default_factory=RetrySettings,
        description="Retry configuration",
    )
    health: HealthSettings = Field(
        default_factory=HealthSettings,
        description="Health monitor configuration",
    )

    model_config = SettingsConfigDict(
        env_prefix="COORDINATOR_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def log_level_value(self) -> int:
        return getattr(logging, self.log_level.upper(), logging.INFO)

    def setup_logging(self, buffer: LogBuffer | None = None) -> None:
        """Configure logging based on settings."""
        configure_logging(self.log_level, buffer)
        if self.log_level.upper() == "DEBUG":
            logging.getLogger("workflow_coordinator").setLevel(logging.DEBUG)
