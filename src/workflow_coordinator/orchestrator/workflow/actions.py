"""Stage-action contract.

A stage action does the real work of one stage (fetching a ticket, writing a
spreadsheet, running a browser session) and reports back. The coordinator never
looks inside an action; it only passes the workflow and its artifacts in and
turns the result into a transition.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Protocol

from workflow_coordinator.state.models import Workflow

# Action name -> error code key used when the action reports failure.
ACTION_ERROR_KEYS: dict[str, str] = {
    "fetch_jira": "JIRA_FETCH_FAILED",
    "generate_testcases": "TESTCASE_GENERATION_FAILED",
    "create_excel": "EXCEL_CREATION_FAILED",
    "explore_app": "SCRIPT_EXPLORATION_FAILED",
    "generate_script": "SCRIPT_GENERATION_FAILED",
    "execute_test": "SCRIPT_EXECUTION_FAILED",
}


@dataclass(frozen=True, slots=True)
class ActionResult:
    success: bool
    artifact_ref: str | None = None
    message: str | None = None
    error: str | None = None
    # Extra transition payload, e.g. ``{"excel_path": ...}``.
    data: dict[str, object] | None = None


class StageAction(Protocol):
    """One stage's work. Must be idempotent: it may run more than once."""

    def execute(self, workflow: Workflow, artifacts: Mapping[str, str]) -> ActionResult: ...


@dataclass(frozen=True, slots=True)
class FunctionAction:
    """Adapt a plain callable to :class:`StageAction`."""

    func: Callable[[Workflow, Mapping[str, str]], ActionResult]

    def execute(self, workflow: Workflow, artifacts: Mapping[str, str]) -> ActionResult:
        return self.func(workflow, artifacts)


@dataclass(frozen=True, slots=True)
class NoopAction:
    """Bookkeeping stages (``initialize``/``finalize``) that have no work."""

    message: str

    def execute(self, workflow: Workflow, artifacts: Mapping[str, str]) -> ActionResult:
        return ActionResult(success=True, message=self.message)


BUILTIN_ACTIONS: dict[str, StageAction] = {
    "initialize": NoopAction("Workflow started"),
    "finalize": NoopAction("Workflow finalized"),
}
