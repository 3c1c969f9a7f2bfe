#!/usr/bin/env python3
"""Programmatic pipeline example.

This demonstrates driving a workflow end to end with the coordinator:

* load settings from `.env`
* register stage actions for the `jira-to-testcases` template
* run the pipeline and print the summary
* flush state on exit (Ctrl+C included)

The ticket key is passed as an argument.
"""

from __future__ import annotations

import argparse
import signal
from collections.abc import Mapping
from pathlib import Path
from typing import Sequence

from workflow_coordinator.core.config import CoordinatorSettings
from workflow_coordinator.core.orchestrator import Orchestrator
from workflow_coordinator.orchestrator.workflow.actions import ActionResult, FunctionAction
from workflow_coordinator.state.models import Workflow


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a jira-to-testcases workflow (example).")
    parser.add_argument("--ticket", required=True, help='Ticket key, e.g. "AOTF-1234"')
    return parser.parse_args(argv)


def _fetch(workflow: Workflow, artifacts: Mapping[str, str]) -> ActionResult:
    return ActionResult(success=True, message=f"Fetched {workflow.business_key}")


def _generate(workflow: Workflow, artifacts: Mapping[str, str]) -> ActionResult:
    # A real action would write an actual workbook here.
    path = Path("test-cases") / f"{workflow.business_key}.xlsx"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"placeholder workbook")
    return ActionResult(success=True, artifact_ref=str(path), message="Test cases generated")


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = CoordinatorSettings()
    for directory in settings.workflow.required_directories:
        (settings.workflow.workspace_root / directory).mkdir(parents=True, exist_ok=True)

    coordinator = Orchestrator(
        settings,
        actions={
            "fetch_jira": FunctionAction(_fetch),
            "generate_testcases": FunctionAction(_generate),
        },
    )

    def _on_signal(signum: int, _frame: object) -> None:
        coordinator.shutdown()
        raise SystemExit(128 + signum)

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        workflow = coordinator.start_workflow(args.ticket, "jira-to-testcases")
        for result in coordinator.runner.run(workflow.id):
            print(f"{result.stage}: {result.outcome.value} ({result.attempts} attempt(s))")

        summary = coordinator.get_workflow_summary(workflow.id)
        if summary is not None:
            print(f"Status: {summary['status']}  Progress: {summary['progress']}")
            print(f"Artifacts: {summary['artifacts']}")
    finally:
        coordinator.shutdown()

    print(f"State persisted to: {coordinator.state_file}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
