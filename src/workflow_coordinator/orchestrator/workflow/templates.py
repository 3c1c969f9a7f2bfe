"""Workflow templates: ordered stage lists plus a rollback strategy.

Two templates ship built in. Further templates can be registered at runtime;
each is validated before it becomes visible to the state machine.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from workflow_coordinator.orchestrator.errors import WorkflowError
from workflow_coordinator.orchestrator.workflow.validation import ValidationRuleRegistry
from workflow_coordinator.state.models import (
    Agent,
    RollbackStrategy,
    StageSpec,
    WorkflowStage,
    WorkflowTemplate,
)

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = "jira-to-automation"

JIRA_TO_AUTOMATION = WorkflowTemplate(
    name="jira-to-automation",
    description="Generate test cases and automation from a Jira ticket",
    stages=(
        StageSpec(stage=WorkflowStage.PENDING, agent=Agent.ORCHESTRATOR, action="initialize"),
        StageSpec(stage=WorkflowStage.JIRA_FETCHED, agent=Agent.TESTGENIE, action="fetch_jira"),
        StageSpec(
            stage=WorkflowStage.TESTCASES_GENERATED,
            agent=Agent.TESTGENIE,
            action="generate_testcases",
        ),
        StageSpec(
            stage=WorkflowStage.EXCEL_CREATED,
            agent=Agent.TESTGENIE,
            action="create_excel",
            validation_rule="validate_excel",
            artifact="excel",
        ),
        StageSpec(
            stage=WorkflowStage.SCRIPT_EXPLORATION,
            agent=Agent.SCRIPTGENERATOR,
            action="explore_app",
            prerequisites=(WorkflowStage.EXCEL_CREATED,),
        ),
        StageSpec(
            stage=WorkflowStage.SCRIPT_GENERATED,
            agent=Agent.SCRIPTGENERATOR,
            action="generate_script",
            validation_rule="validate_script",
            artifact="script",
        ),
        StageSpec(
            stage=WorkflowStage.SCRIPT_EXECUTED,
            agent=Agent.SCRIPTGENERATOR,
            action="execute_test",
            artifact="testResult",
        ),
        StageSpec(
            stage=WorkflowStage.COMPLETED,
            agent=Agent.ORCHESTRATOR,
            action="finalize",
            terminal=True,
        ),
    ),
    rollback_strategy=RollbackStrategy(
        artifacts_to_keep=("test-cases/*.xlsx", "tests/specs/*/*.spec.js"),
        keep_error_logs=True,
        cleanup_patterns=("tests/*-temp-*.spec.js", "test-results/temp-*"),
    ),
)

JIRA_TO_TESTCASES = WorkflowTemplate(
    name="jira-to-testcases",
    description="Generate manual test cases from a Jira ticket (no automation)",
    stages=(
        StageSpec(stage=WorkflowStage.PENDING, agent=Agent.ORCHESTRATOR, action="initialize"),
        StageSpec(stage=WorkflowStage.JIRA_FETCHED, agent=Agent.TESTGENIE, action="fetch_jira"),
        StageSpec(
            stage=WorkflowStage.TESTCASES_GENERATED,
            agent=Agent.TESTGENIE,
            action="generate_testcases",
            validation_rule="validate_excel",
            artifact="excel",
        ),
        StageSpec(
            stage=WorkflowStage.COMPLETED,
            agent=Agent.ORCHESTRATOR,
            action="finalize",
            terminal=True,
        ),
    ),
    rollback_strategy=RollbackStrategy(artifacts_to_keep=("test-cases/*.xlsx",)),
)

BUILTIN_TEMPLATES: tuple[WorkflowTemplate, ...] = (JIRA_TO_AUTOMATION, JIRA_TO_TESTCASES)


class TemplateRegistry:
    """Templates keyed by name."""

    def __init__(
        self,
        rules: ValidationRuleRegistry,
        templates: Iterable[WorkflowTemplate] = BUILTIN_TEMPLATES,
    ) -> None:
        self._rules = rules
        self._templates: dict[str, WorkflowTemplate] = {}
        self._builtin: set[str] = set()
        for template in templates:
            self._check(template)
            self._templates[template.name] = template
            self._builtin.add(template.name)

    def _check(self, template: WorkflowTemplate) -> None:
        problems: list[str] = []
        if not template.stages:
            problems.append("template must have at least one stage")

        seen: list[str] = []
        for spec in template.stages:
            if spec.stage in seen:
                problems.append(f"duplicate stage: {spec.stage}")
            if spec.validation_rule and spec.validation_rule not in self._rules:
                problems.append(
                    f"stage {spec.stage} uses unknown validation rule: {spec.validation_rule}"
                )
            for prereq in spec.prerequisites:
                if prereq not in seen:
                    problems.append(f"stage {spec.stage} has unknown prerequisite: {prereq}")
            seen.append(spec.stage)

        if problems:
            raise WorkflowError(
                "INVALID_TEMPLATE",
                "; ".join(problems),
                {"template": template.name},
            )

    def register(self, template: WorkflowTemplate | dict[str, Any]) -> WorkflowTemplate:
        """Validate and add a template, replacing any custom one of the same name."""

        if not isinstance(template, WorkflowTemplate):
            template = WorkflowTemplate.model_validate(template)
        if template.name in self._builtin:
            raise WorkflowError(
                "INVALID_TEMPLATE",
                f"cannot replace built-in template: {template.name}",
                {"template": template.name},
            )
        self._check(template)
        if template.name in self._templates:
            logger.warning("Overwriting existing template", extra={"template": template.name})
        self._templates[template.name] = template
        logger.info(
            "Template registered",
            extra={"template": template.name, "stage_count": len(template.stages)},
        )
        return template

    def unregister(self, name: str) -> bool:
        if name in self._builtin or name not in self._templates:
            return False
        del self._templates[name]
        return True

    def get(self, name: str) -> WorkflowTemplate | None:
        return self._templates.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._templates

    def list_templates(self) -> list[dict[str, Any]]:
        return [
            {
                "name": t.name,
                "description": t.description,
                "stages": len(t.stages),
                "builtin": t.name in self._builtin,
            }
            for t in self._templates.values()
        ]
