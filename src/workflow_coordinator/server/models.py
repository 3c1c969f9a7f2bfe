"""Pydantic models for the status API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ApiHealth(BaseModel):
    status: str
    active_workflows: int
    state_dirty: bool


class ApiWorkflow(BaseModel):
    id: str
    business_key: str
    template_name: str
    status: str
    current_stage: str
    current_stage_index: int
    started_at: str
    updated_at: str
    completed_at: str | None = None
    artifacts: dict[str, str] = Field(default_factory=dict)
    error_count: int = 0


class ApiWorkflowDetail(ApiWorkflow):
    progress: str
    duration: str
    history: list[dict[str, Any]] = Field(default_factory=list)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    health: dict[str, Any] | None = None


class ApiEvent(BaseModel):
    id: str
    type: str
    timestamp: str
    payload: dict[str, Any]


class ApiSweepResult(BaseModel):
    actions: list[dict[str, Any]] = Field(default_factory=list)
