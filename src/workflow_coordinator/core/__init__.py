"""Core package initialization."""

from workflow_coordinator.core.config import CoordinatorSettings
from workflow_coordinator.core.orchestrator import Orchestrator

__all__ = [
    "CoordinatorSettings",
    "Orchestrator",
]
