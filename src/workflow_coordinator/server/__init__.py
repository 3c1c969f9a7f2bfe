"""FastAPI status API for the workflow coordinator.

Business logic stays in `workflow_coordinator.orchestrator.*`; this package only
handles routing and serialisation.
"""

from __future__ import annotations

__all__ = ["create_app"]

from workflow_coordinator.server.app import create_app
