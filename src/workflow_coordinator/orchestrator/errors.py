"""Structured error taxonomy for workflow operations.

Errors are keyed by a stable ``error_code_key`` that resolves to a numeric-style
code (validation 1xxx, stage 2xxx, artifact validation 3xxx, system 4xxx,
timeout 5xxx), a human message and a recoverability flag.

Constructing a :class:`WorkflowError` logs it immediately at ERROR level, so
callers never have to remember to report a failure separately.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from workflow_coordinator.orchestrator.logging import safe_extra

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ErrorDefinition:
    code: str
    message: str
    recoverable: bool


ERROR_CODES: dict[str, ErrorDefinition] = {
    # Validation (1xxx)
    "INVALID_TICKET_FORMAT": ErrorDefinition("E1001", "Invalid ticket format", True),
    "INVALID_TEMPLATE": ErrorDefinition("E1002", "Invalid workflow template", True),
    "ACTIVE_WORKFLOW_EXISTS": ErrorDefinition(
        "E1003", "Active workflow already exists for ticket", True
    ),
    "MISSING_DIRECTORY": ErrorDefinition("E1004", "Required directory missing", True),
    "MCP_NOT_CONFIGURED": ErrorDefinition("E1005", "MCP not configured", True),
    # Stage (2xxx)
    "JIRA_FETCH_FAILED": ErrorDefinition("E2001", "Failed to fetch Jira ticket", True),
    "TESTCASE_GENERATION_FAILED": ErrorDefinition("E2002", "Test case generation failed", True),
    "EXCEL_CREATION_FAILED": ErrorDefinition("E2003", "Excel file creation failed", True),
    "SCRIPT_EXPLORATION_FAILED": ErrorDefinition(
        "E2004", "Application exploration failed", True
    ),
    "SCRIPT_GENERATION_FAILED": ErrorDefinition("E2005", "Script generation failed", True),
    "SCRIPT_EXECUTION_FAILED": ErrorDefinition("E2006", "Script execution failed", True),
    # Artifact validation (3xxx)
    "EXCEL_VALIDATION_FAILED": ErrorDefinition("E3001", "Excel file validation failed", True),
    "SCRIPT_VALIDATION_FAILED": ErrorDefinition("E3002", "Script validation failed", True),
    "PREREQUISITE_NOT_MET": ErrorDefinition("E3003", "Stage prerequisite not met", False),
    "VALIDATION_FAILED": ErrorDefinition("E3004", "Stage validation failed", True),
    # System (4xxx)
    "STATE_SAVE_FAILED": ErrorDefinition("E4001", "Failed to save workflow state", True),
    "STATE_LOAD_FAILED": ErrorDefinition("E4002", "Failed to load workflow state", True),
    "WORKFLOW_NOT_FOUND": ErrorDefinition("E4003", "Workflow not found", False),
    "WORKFLOW_INACTIVE": ErrorDefinition("E4004", "Cannot transition inactive workflow", False),
    # Timeout (5xxx)
    "STAGE_TIMEOUT": ErrorDefinition("E5001", "Stage execution timed out", True),
    "WORKFLOW_TIMEOUT": ErrorDefinition("E5002", "Workflow execution timed out", False),
}

UNKNOWN_ERROR = ErrorDefinition("E9999", "Unknown error", False)

RECOVERY_SUGGESTIONS: dict[str, str] = {
    "E1001": "Use format PROJECT-NUMBER (e.g., AOTF-1234)",
    "E1002": "Use a registered template, e.g. jira-to-automation or jira-to-testcases",
    "E1003": "Complete or cancel the existing active workflow first",
    "E1004": "Create the required directory structure",
    "E1005": "Configure the MCP server in .vscode/mcp.json",
    "E2001": "Check Jira connectivity and ticket permissions",
    "E2002": "Verify ticket has sufficient acceptance criteria",
    "E2003": "Check disk space and file permissions",
    "E2004": "Ensure application URL is accessible",
    "E2005": "Review test case format and selectors",
    "E2006": "Check test environment and authentication",
    "E3001": "Verify Excel file was created correctly",
    "E3002": "Ensure script follows Playwright best practices",
    "E3003": "Complete prerequisite stages first",
    "E3004": "Fix the stage output and retry the transition",
    "E4001": "Check disk space and file permissions",
    "E4002": "Verify state file is not corrupted",
    "E4003": "Initialize a new workflow for this ticket",
    "E4004": "Workflow must be ACTIVE to transition",
    "E5001": "Retry the stage or increase timeout",
    "E5002": "Start a new workflow",
}

DEFAULT_RECOVERY_SUGGESTION = "Check error details and try again"


def resolve_error_code(error_code_key: str) -> ErrorDefinition:
    """Return the catalogue entry for ``error_code_key`` (never raises)."""

    return ERROR_CODES.get(error_code_key, UNKNOWN_ERROR)


def recovery_suggestion_for(code: str) -> str:
    return RECOVERY_SUGGESTIONS.get(code, DEFAULT_RECOVERY_SUGGESTION)


class WorkflowError(Exception):
    """A self-describing, self-reporting workflow error."""

    def __init__(
        self,
        error_code_key: str,
        details: str = "",
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        definition = resolve_error_code(error_code_key)
        message = f"[{definition.code}] {definition.message}"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)

        self.error_code_key = error_code_key
        self.code = definition.code
        self.message = message
        self.details = details
        self.recoverable = definition.recoverable
        self.context: dict[str, Any] = dict(context or {})
        self.cause = cause
        self.timestamp = datetime.now(UTC).isoformat()
        if cause is not None:
            self.__cause__ = cause

        logger.error(
            message,
            extra=safe_extra(
                {**self.context, "error_code": self.code, "recoverable": self.recoverable}
            ),
        )

    @property
    def error_code(self) -> str:
        """Alias used by retry classification."""

        return self.error_code_key

    def is_recoverable(self) -> bool:
        return self.recoverable

    @property
    def recovery_suggestion(self) -> str:
        return recovery_suggestion_for(self.code)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "code": self.code,
            "errorCodeKey": self.error_code_key,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "recoverySuggestion": self.recovery_suggestion,
            "context": self.context,
            "timestamp": self.timestamp,
            "cause": str(self.cause) if self.cause is not None else None,
        }

    @classmethod
    def create(
        cls,
        error_code_key: str,
        *,
        details: str = "",
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> WorkflowError:
        return cls(error_code_key, details, context, cause)

    @classmethod
    def wrap(
        cls,
        error: BaseException,
        error_code_key: str,
        context: dict[str, Any] | None = None,
    ) -> WorkflowError:
        """Wrap an arbitrary exception, keeping it as the cause."""

        return cls(error_code_key, str(error), context, error)


@dataclass(frozen=True, slots=True)
class PreconditionResult:
    """Outcome of the pre-initialisation checks.

    ``checks`` maps every check name to whether it passed; ``fixes`` holds
    remediation text for each failed check.
    """

    checks: dict[str, bool]
    fixes: dict[str, str]

    @property
    def can_start(self) -> bool:
        return all(self.checks.values())

    @property
    def failed(self) -> list[str]:
        return [name for name, passed in self.checks.items() if not passed]


# Check name -> error code key, in evaluation order.
PRECONDITION_ERROR_KEYS: dict[str, str] = {
    "ticket_format": "INVALID_TICKET_FORMAT",
    "template_exists": "INVALID_TEMPLATE",
    "no_active_conflict": "ACTIVE_WORKFLOW_EXISTS",
    "atlassian_mcp_configured": "MCP_NOT_CONFIGURED",
    "playwright_mcp_configured": "MCP_NOT_CONFIGURED",
}


class PreconditionError(WorkflowError):
    """Raised by ``initialize`` when one or more preconditions fail.

    The error code reflects the first failing check; ``result`` carries all of
    them together with their remediation text.
    """

    def __init__(self, result: PreconditionResult, context: dict[str, Any] | None = None) -> None:
        self.result = result
        failed = result.failed
        first = failed[0] if failed else ""
        key = PRECONDITION_ERROR_KEYS.get(first, "MISSING_DIRECTORY")
        details = f"{', '.join(failed)}. Fixes: " + "; ".join(
            f"{name}: {fix}" for name, fix in result.fixes.items()
        )
        super().__init__(key, details, {**(context or {}), "failed_checks": failed})

    @property
    def failed(self) -> list[str]:
        return self.result.failed

    @property
    def fixes(self) -> dict[str, str]:
        return self.result.fixes

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["checks"] = self.result.checks
        out["fixes"] = self.result.fixes
        return out
