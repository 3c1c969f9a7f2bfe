"""Named stage validation rules.

Templates refer to rules by name (``validation_rule="validate_excel"``); the
state machine resolves the name here and runs the rule against the transition
payload before leaving the stage. Rules are plain predicates and never mutate
the workflow.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from workflow_coordinator.state.models import Workflow

logger = logging.getLogger(__name__)

ValidationRule = Callable[[Workflow, Mapping[str, Any]], bool]


def resolve_path(raw: str, root: Path) -> Path:
    path = Path(raw)
    return path if path.is_absolute() else (root / path)


def file_artifact_rule(data_key: str, suffix: str, *, root: Path) -> ValidationRule:
    """Build a rule requiring ``data[data_key]`` to name a non-empty ``suffix`` file."""

    def _rule(workflow: Workflow, data: Mapping[str, Any]) -> bool:
        raw = data.get(data_key)
        if not isinstance(raw, str) or not raw:
            logger.info(
                "Validation failed: path missing",
                extra={"workflow_id": workflow.id, "data_key": data_key},
            )
            return False

        path = resolve_path(raw, root)
        if not path.name.endswith(suffix):
            logger.info(
                "Validation failed: unexpected file type",
                extra={"workflow_id": workflow.id, "path": str(path), "expected_suffix": suffix},
            )
            return False
        try:
            size = path.stat().st_size
        except OSError:
            logger.info(
                "Validation failed: file not found",
                extra={"workflow_id": workflow.id, "path": str(path)},
            )
            return False
        if not path.is_file() or size == 0:
            logger.info(
                "Validation failed: file empty",
                extra={"workflow_id": workflow.id, "path": str(path)},
            )
            return False
        return True

    _rule.__name__ = f"require_{data_key}"
    return _rule


class ValidationRuleRegistry:
    """Maps rule names to predicates."""

    def __init__(self) -> None:
        self._rules: dict[str, ValidationRule] = {}

    @classmethod
    def with_builtins(cls, workspace_root: Path) -> ValidationRuleRegistry:
        registry = cls()
        registry.register("validate_excel", file_artifact_rule("excel_path", ".xlsx", root=workspace_root))
        registry.register(
            "validate_script", file_artifact_rule("script_path", ".spec.js", root=workspace_root)
        )
        return registry

    def register(self, name: str, rule: ValidationRule) -> None:
        if name in self._rules:
            logger.warning("Overwriting validation rule", extra={"rule": name})
        self._rules[name] = rule

    def get(self, name: str) -> ValidationRule | None:
        return self._rules.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._rules

    def names(self) -> list[str]:
        return sorted(self._rules)
