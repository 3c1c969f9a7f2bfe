"""Workflow Coordinator.

A stage-based workflow engine for multi-agent pipelines:
- template-driven stage sequencing with validation and rollback
- debounced, crash-safe persistence of workflow state
- an in-process event bus for lifecycle events
- health monitoring, retry policy and structured errors
"""

__version__ = "0.1.0"

from workflow_coordinator.core.config import CoordinatorSettings

__all__ = ["__version__", "CoordinatorSettings"]
