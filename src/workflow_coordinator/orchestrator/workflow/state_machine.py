"""Template-driven workflow state machine.

Each workflow walks the stage list of its template. ``transition`` validates the
current stage, checks the next stage's prerequisites, and only then applies the
move, so a rejected transition leaves the workflow untouched. All mutations go
through the :class:`StateManager` lock and end with ``mark_dirty()``; lifecycle
events are published on the injected :class:`EventBus`.

The machine fails fast: it raises :class:`WorkflowError` synchronously and never
retries. Retrying stage actions is the caller's job (see ``runner``).
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from fnmatch import fnmatch
from typing import Any

from workflow_coordinator.core.config import WorkflowSettings
from workflow_coordinator.orchestrator.errors import (
    PreconditionError,
    PreconditionResult,
    WorkflowError,
)
from workflow_coordinator.orchestrator.events import EventBus, WorkflowEvents
from workflow_coordinator.orchestrator.metrics import format_duration
from workflow_coordinator.orchestrator.workflow.templates import DEFAULT_TEMPLATE, TemplateRegistry
from workflow_coordinator.orchestrator.workflow.validation import (
    ValidationRuleRegistry,
    resolve_path,
)
from workflow_coordinator.state.manager import StateManager
from workflow_coordinator.state.models import (
    Agent,
    ArchivedWorkflow,
    ErrorRecord,
    HistoryEntry,
    Workflow,
    WorkflowStage,
    WorkflowStatus,
    WorkflowTemplate,
    utc_now,
)

logger = logging.getLogger(__name__)

SOURCE = "WorkflowStateMachine"

# Rule name -> error code key raised when the rule rejects a transition.
RULE_ERROR_KEYS: dict[str, str] = {
    "validate_excel": "EXCEL_VALIDATION_FAILED",
    "validate_script": "SCRIPT_VALIDATION_FAILED",
}

# MCP servers a workflow can require through its options.
MCP_SERVERS: tuple[str, ...] = ("atlassian", "playwright")


def _jsonable(data: Mapping[str, Any] | None) -> dict[str, Any]:
    """Copy ``data`` into plain JSON types so it can be persisted."""

    if not data:
        return {}
    return json.loads(json.dumps(dict(data), default=str))


def _directory_check_name(directory: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", directory.lower()).strip("_")
    return f"{slug}_directory_exists"


class WorkflowStateMachine:
    """Owns workflow lifecycle rules on top of the persisted state document."""

    def __init__(
        self,
        store: StateManager,
        event_bus: EventBus,
        templates: TemplateRegistry,
        rules: ValidationRuleRegistry,
        settings: WorkflowSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.event_bus = event_bus
        self.templates = templates
        self.rules = rules
        self.settings = settings
        self._clock = clock
        self._ticket_re = re.compile(settings.ticket_pattern)

    # -- helpers ------------------------------------------------------------

    @property
    def _workflows(self) -> dict[str, Workflow]:
        return self.store.state.workflows

    def _publish(self, event_type: str, workflow: Workflow, **payload: Any) -> None:
        self.event_bus.publish(
            event_type,
            {
                "workflow_id": workflow.id,
                "business_key": workflow.business_key,
                **payload,
                "source": SOURCE,
            },
        )

    def _require(self, workflow_id: str) -> Workflow:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowError("WORKFLOW_NOT_FOUND", workflow_id, {"workflow_id": workflow_id})
        return workflow

    def _new_workflow_id(self, business_key: str, now: datetime) -> str:
        millis = int(now.timestamp() * 1000)
        workflow_id = f"{business_key}-{millis}"
        while workflow_id in self._workflows:
            millis += 1
            workflow_id = f"{business_key}-{millis}"
        return workflow_id

    def _append_history(self, workflow: Workflow, entry: HistoryEntry) -> None:
        workflow.history.append(entry)
        if len(workflow.history) > self.settings.history_max_entries:
            self._trim(workflow, self.settings.history_max_entries)

    def _check_history_bounds(self, max_entries: int) -> None:
        """Raise before any mutation if ``max_entries`` leaves no room for the tail."""

        head_size = self.settings.history_head_entries
        if max_entries <= head_size + 1:
            raise ValueError(f"max_entries must exceed {head_size + 1}")

    def _append_error(
        self, workflow: Workflow, message: str, details: Mapping[str, Any] | None = None
    ) -> ErrorRecord:
        now = self._clock()
        record = ErrorRecord(
            timestamp=now,
            stage=workflow.current_stage,
            message=message,
            details=_jsonable(details),
        )
        workflow.errors.append(record)
        workflow.updated_at = now
        self._publish(
            WorkflowEvents.AGENT_ERROR,
            workflow,
            stage=workflow.current_stage,
            error_message=message,
            error_details=record.details,
            error_count=len(workflow.errors),
        )
        return record

    def _force_fail(self, workflow: Workflow, now: datetime) -> str:
        failed_at = workflow.current_stage
        workflow.status = WorkflowStatus.FAILED
        workflow.current_stage = WorkflowStage.FAILED
        workflow.completed_at = now
        workflow.updated_at = now
        workflow.generation += 1
        return failed_at

    # -- preconditions ------------------------------------------------------

    def has_active_workflow(self, business_key: str) -> bool:
        with self.store.lock:
            return any(
                w.business_key == business_key and w.is_active for w in self._workflows.values()
            )

    def validate_preconditions(
        self,
        business_key: str,
        template_name: str,
        options: Mapping[str, Any] | None = None,
    ) -> PreconditionResult:
        """Evaluate every precondition; never stops at the first failure.

        ``options`` may set ``require_atlassian_mcp`` or ``require_playwright_mcp``
        to also require that MCP server to be configured for the workspace.
        """

        options = options or {}
        root = self.settings.workspace_root
        checks: dict[str, bool] = {
            "ticket_format": bool(self._ticket_re.match(business_key)),
            "template_exists": template_name in self.templates,
            "no_active_conflict": not self.has_active_workflow(business_key),
        }
        fix_text: dict[str, str] = {
            "ticket_format": "Ticket ID must be in format PROJECT-NUMBER (e.g., AOTF-1234)",
            "template_exists": "Use a registered template: "
            + ", ".join(t["name"] for t in self.templates.list_templates()),
            "no_active_conflict": "Complete or cancel existing active workflow for this ticket",
        }
        for directory in self.settings.required_directories:
            name = _directory_check_name(directory)
            checks[name] = (root / directory).is_dir()
            fix_text[name] = f"Create {directory}/ directory: mkdir -p {directory}"

        for server in MCP_SERVERS:
            if options.get(f"require_{server}_mcp"):
                name = f"{server}_mcp_configured"
                checks[name] = self.check_mcp_configuration(server)
                fix_text[name] = (
                    f"Add a '{server}' entry under 'servers' in "
                    + " or ".join(self.settings.mcp_config_files)
                )

        fixes = {name: fix_text[name] for name, passed in checks.items() if not passed}
        return PreconditionResult(checks=checks, fixes=fixes)

    def check_mcp_configuration(self, server: str) -> bool:
        """Whether the workspace's MCP config lists ``server``.

        With no MCP config file in the workspace the editor manages servers
        itself, so the server is assumed available.
        """

        found_config = False
        for name in self.settings.mcp_config_files:
            path = self.settings.workspace_root / name
            if not path.is_file():
                continue
            found_config = True
            try:
                config = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(
                    "Unreadable MCP config", extra={"path": str(path), "error": str(e)}
                )
                continue
            servers = config.get("servers") if isinstance(config, dict) else None
            if isinstance(servers, dict) and server in servers:
                return True
        return not found_config

    # -- lifecycle ----------------------------------------------------------

    def initialize(
        self,
        business_key: str,
        template_name: str = DEFAULT_TEMPLATE,
        options: Mapping[str, Any] | None = None,
    ) -> Workflow:
        """Create a new ACTIVE workflow positioned at the template's first stage.

        Stale workflows are swept first, so a workflow abandoned for longer than
        ``stale_workflow_hours`` never blocks a new one for the same key.

        Raises:
            PreconditionError: Listing every failed check and its fix.
        """

        with self.store.lock:
            self.clean_stale_workflows()

            result = self.validate_preconditions(business_key, template_name, options)
            if not result.can_start:
                raise PreconditionError(
                    result, {"business_key": business_key, "template": template_name}
                )

            template = self.templates.get(template_name)
            if template is None:
                raise WorkflowError(
                    "INVALID_TEMPLATE", template_name, {"business_key": business_key}
                )
            first = template.stages[0]

            now = self._clock()
            workflow = Workflow(
                id=self._new_workflow_id(business_key, now),
                business_key=business_key,
                template_name=template_name,
                template=template,
                current_stage=first.stage,
                current_stage_index=0,
                started_at=now,
                updated_at=now,
                options=_jsonable(options),
                history=[
                    HistoryEntry(
                        stage=first.stage,
                        timestamp=now,
                        agent=Agent.ORCHESTRATOR,
                        message="Workflow initialized successfully",
                    )
                ],
            )
            self._workflows[workflow.id] = workflow
            self.store.mark_dirty()

            logger.info(
                "Workflow initialized",
                extra={
                    "workflow_id": workflow.id,
                    "business_key": business_key,
                    "template": template_name,
                },
            )
            self._publish(
                WorkflowEvents.WORKFLOW_INITIALIZED,
                workflow,
                template_name=template_name,
                status=workflow.status.value,
                current_stage=workflow.current_stage,
            )
            self._publish(
                WorkflowEvents.STAGE_STARTED,
                workflow,
                stage=first.stage,
                agent=first.agent,
                previous_stage=None,
            )
            return workflow

    def transition(
        self, workflow_id: str, transition_data: Mapping[str, Any] | None = None
    ) -> Workflow:
        """Advance ``workflow_id`` past its current stage.

        Raises:
            WorkflowError: WORKFLOW_NOT_FOUND, WORKFLOW_INACTIVE, a validation
                failure (EXCEL_VALIDATION_FAILED, SCRIPT_VALIDATION_FAILED or
                VALIDATION_FAILED) or PREREQUISITE_NOT_MET. In every case the
                stage index, stage and history are left unchanged.
        """

        data = dict(transition_data or {})

        with self.store.lock:
            workflow = self._require(workflow_id)
            context = {"workflow_id": workflow.id, "business_key": workflow.business_key}

            if not workflow.is_active:
                raise WorkflowError(
                    "WORKFLOW_INACTIVE", f"status is {workflow.status.value}", context
                )

            spec = workflow.stage_spec()
            if spec is None:
                raise WorkflowError(
                    "WORKFLOW_INACTIVE",
                    f"no stage at index {workflow.current_stage_index}",
                    context,
                )
            self._check_history_bounds(self.settings.history_max_entries)

            if spec.validation_rule:
                if not self._run_rule(workflow, spec.validation_rule, data):
                    self._append_error(workflow, f"Stage validation failed: {spec.stage}")
                    self._publish(
                        WorkflowEvents.STAGE_FAILED,
                        workflow,
                        stage=spec.stage,
                        reason="Validation failed",
                    )
                    self.store.mark_dirty()
                    raise WorkflowError(
                        RULE_ERROR_KEYS.get(spec.validation_rule, "VALIDATION_FAILED"),
                        f"stage {spec.stage} rejected by {spec.validation_rule}",
                        {**context, "stage": spec.stage},
                    )

            next_index = workflow.current_stage_index + 1
            next_spec = workflow.stage_spec(next_index)
            if next_spec is not None:
                missing = [
                    p for p in next_spec.prerequisites if not self.has_completed_stage(workflow, p)
                ]
                if missing:
                    for prereq in missing:
                        self._append_error(workflow, f"Prerequisite not met: {prereq}")
                    self.store.mark_dirty()
                    raise WorkflowError(
                        "PREREQUISITE_NOT_MET",
                        f"{', '.join(missing)} for stage {next_spec.stage}",
                        {**context, "stage": next_spec.stage, "missing": missing},
                    )

            # All checks passed; apply the move.
            now = self._clock()
            previous_stage = workflow.current_stage
            completed = next_spec is None or next_spec.terminal

            artifact_ref: str | None = None
            if spec.artifact:
                raw = data.get(f"{spec.artifact}_path")
                if isinstance(raw, str) and raw:
                    artifact_ref = str(resolve_path(raw, self.settings.workspace_root))
                    workflow.artifacts[spec.artifact] = artifact_ref

            workflow.current_stage_index = next_index
            if next_spec is None:
                workflow.current_stage = WorkflowStage.COMPLETED
            else:
                workflow.current_stage = next_spec.stage
            if completed:
                workflow.status = WorkflowStatus.COMPLETED
                workflow.completed_at = now
            workflow.updated_at = now

            self._append_history(
                workflow,
                HistoryEntry(
                    stage=workflow.current_stage,
                    timestamp=now,
                    agent=next_spec.agent if next_spec is not None else Agent.ORCHESTRATOR,
                    message=str(data.get("message") or f"Transitioned to {workflow.current_stage}"),
                    data=_jsonable(data),
                ),
            )
            self.store.mark_dirty()

            logger.info(
                "Workflow transitioned",
                extra={
                    **context,
                    "stage": workflow.current_stage,
                    "previous_stage": previous_stage,
                },
            )

            if artifact_ref is not None:
                self._publish(
                    WorkflowEvents.ARTIFACT_CREATED,
                    workflow,
                    artifact_type=spec.artifact,
                    artifact_path=artifact_ref,
                    stage=previous_stage,
                )
            self._publish(
                WorkflowEvents.STAGE_COMPLETED,
                workflow,
                completed_stage=previous_stage,
                current_stage=workflow.current_stage,
                artifacts=dict(workflow.artifacts),
                transition_data=_jsonable(data),
            )
            if completed:
                logger.info("Workflow completed", extra=context)
                self._publish(
                    WorkflowEvents.WORKFLOW_COMPLETED,
                    workflow,
                    artifacts=dict(workflow.artifacts),
                    duration=self.calculate_duration(workflow),
                )
            elif next_spec is not None:
                self._publish(
                    WorkflowEvents.STAGE_STARTED,
                    workflow,
                    stage=next_spec.stage,
                    agent=next_spec.agent,
                    previous_stage=previous_stage,
                )
            return workflow

    def _run_rule(self, workflow: Workflow, rule_name: str, data: Mapping[str, Any]) -> bool:
        rule = self.rules.get(rule_name)
        if rule is None:
            logger.error(
                "Unknown validation rule",
                extra={"workflow_id": workflow.id, "rule": rule_name},
            )
            return False
        try:
            return bool(rule(workflow, data))
        except Exception:
            logger.exception(
                "Validation rule raised",
                extra={"workflow_id": workflow.id, "rule": rule_name},
            )
            return False

    def has_completed_stage(self, workflow: Workflow, stage_name: str) -> bool:
        return any(entry.stage == stage_name for entry in workflow.history)

    def record_artifact(self, workflow_id: str, kind: str, ref: str) -> Workflow:
        """Insert or overwrite the artifact ``kind``."""

        with self.store.lock:
            workflow = self._require(workflow_id)
            workflow.artifacts[kind] = ref
            workflow.updated_at = self._clock()
            self.store.mark_dirty()
            self._publish(
                WorkflowEvents.ARTIFACT_CREATED,
                workflow,
                artifact_type=kind,
                artifact_path=ref,
                stage=workflow.current_stage,
            )
            return workflow

    def record_error(
        self, workflow_id: str, message: str, details: Mapping[str, Any] | None = None
    ) -> ErrorRecord:
        """Append an error record. Accepted whatever the workflow's status."""

        with self.store.lock:
            workflow = self._require(workflow_id)
            record = self._append_error(workflow, message, details)
            self.store.mark_dirty()
            return record

    def fail(self, workflow_id: str, reason: str) -> Workflow:
        """Force the workflow to FAILED and run its rollback strategy.

        Failing a workflow that is already terminal is a no-op.
        """

        with self.store.lock:
            workflow = self._require(workflow_id)
            if not workflow.is_active:
                logger.warning(
                    "Ignoring fail on inactive workflow",
                    extra={"workflow_id": workflow_id, "status": workflow.status.value},
                )
                return workflow

            self._check_history_bounds(self.settings.history_max_entries)
            now = self._clock()
            failed_at = self._force_fail(workflow, now)
            self._append_error(workflow, f"Workflow failed: {reason}")
            self._execute_rollback(workflow)
            self.store.mark_dirty()

            logger.warning(
                "Workflow failed",
                extra={
                    "workflow_id": workflow.id,
                    "business_key": workflow.business_key,
                    "stage": failed_at,
                    "reason": reason,
                },
            )
            self._publish(
                WorkflowEvents.WORKFLOW_FAILED,
                workflow,
                reason=reason,
                failed_at_stage=failed_at,
                artifacts=dict(workflow.artifacts),
                errors=[e.model_dump(mode="json") for e in workflow.errors],
                duration=self.calculate_duration(workflow),
            )
            return workflow

    def _execute_rollback(self, workflow: Workflow) -> None:
        strategy = workflow.template.rollback_strategy
        if strategy is None:
            return

        removed = self._cleanup_files(workflow, strategy.cleanup_patterns, strategy.artifacts_to_keep)
        workflow.current_stage = WorkflowStage.ROLLED_BACK
        self._append_history(
            workflow,
            HistoryEntry(
                stage=WorkflowStage.ROLLED_BACK,
                timestamp=self._clock(),
                agent=Agent.ORCHESTRATOR,
                message="Rollback executed - artifacts preserved",
                data={
                    "kept_artifacts": list(strategy.artifacts_to_keep),
                    "artifact_paths": dict(workflow.artifacts),
                    "removed_files": removed,
                },
            ),
        )
        self._publish(
            WorkflowEvents.WORKFLOW_ROLLED_BACK,
            workflow,
            kept_artifacts=list(strategy.artifacts_to_keep),
            removed_files=removed,
        )

    def _cleanup_files(
        self, workflow: Workflow, patterns: tuple[str, ...], keep: tuple[str, ...]
    ) -> list[str]:
        root = self.settings.workspace_root
        protected = set(workflow.artifacts.values())
        removed: list[str] = []
        for pattern in patterns:
            for path in root.glob(pattern):
                relative = path.relative_to(root).as_posix()
                if not path.is_file() or str(path) in protected:
                    continue
                if any(fnmatch(relative, k) for k in keep):
                    continue
                try:
                    path.unlink()
                except OSError as e:
                    logger.warning(
                        "Rollback cleanup failed",
                        extra={"workflow_id": workflow.id, "path": str(path), "error": str(e)},
                    )
                    continue
                removed.append(relative)
        return removed

    def cancel(self, workflow_id: str, reason: str = "Cancelled by user") -> Workflow:
        """Stop an ACTIVE workflow; later transitions are refused."""

        with self.store.lock:
            workflow = self._require(workflow_id)
            if not workflow.is_active:
                raise WorkflowError(
                    "WORKFLOW_INACTIVE",
                    f"status is {workflow.status.value}",
                    {"workflow_id": workflow_id},
                )

            self._check_history_bounds(self.settings.history_max_entries)
            now = self._clock()
            cancelled_at = workflow.current_stage
            workflow.status = WorkflowStatus.CANCELLED
            workflow.current_stage = WorkflowStage.CANCELLED
            workflow.completed_at = now
            workflow.updated_at = now
            workflow.generation += 1
            self._append_history(
                workflow,
                HistoryEntry(
                    stage=WorkflowStage.CANCELLED,
                    timestamp=now,
                    agent=Agent.ORCHESTRATOR,
                    message=reason,
                ),
            )
            self.store.mark_dirty()

            logger.info("Workflow cancelled", extra={"workflow_id": workflow_id, "reason": reason})
            self._publish(
                WorkflowEvents.WORKFLOW_CANCELLED,
                workflow,
                reason=reason,
                cancelled_at_stage=cancelled_at,
                duration=self.calculate_duration(workflow),
            )
            return workflow

    # -- queries ------------------------------------------------------------

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        with self.store.lock:
            return self._workflows.get(workflow_id)

    def get_workflow_by_key(self, business_key: str) -> Workflow | None:
        """Most recently started workflow for ``business_key``."""

        with self.store.lock:
            matches = [w for w in self._workflows.values() if w.business_key == business_key]
        if not matches:
            return None
        return max(matches, key=lambda w: w.started_at)

    def get_active_workflows(self) -> list[Workflow]:
        """Active workflows, newest first."""

        with self.store.lock:
            active = [w for w in self._workflows.values() if w.is_active]
        return sorted(active, key=lambda w: w.started_at, reverse=True)

    def list_workflows(self, status: WorkflowStatus | None = None) -> list[Workflow]:
        with self.store.lock:
            items = list(self._workflows.values())
        if status is not None:
            items = [w for w in items if w.status is status]
        return sorted(items, key=lambda w: w.started_at, reverse=True)

    def calculate_duration(self, workflow: Workflow) -> str:
        end = workflow.completed_at or self._clock()
        return format_duration((end - workflow.started_at).total_seconds() * 1000)

    def get_workflow_summary(self, workflow_id: str) -> dict[str, Any] | None:
        with self.store.lock:
            workflow = self._workflows.get(workflow_id)
            if workflow is None:
                return None

            total = workflow.total_stages
            if workflow.status is WorkflowStatus.COMPLETED:
                done = total
            else:
                done = min(workflow.current_stage_index, total)
            progress = round(done / total * 100) if total else 100
            last_error = workflow.errors[-1].model_dump(mode="json") if workflow.errors else None
            return {
                "id": workflow.id,
                "business_key": workflow.business_key,
                "template": workflow.template_name,
                "status": workflow.status.value,
                "current_stage": workflow.current_stage,
                "progress": f"{done}/{total} ({progress}%)",
                "started_at": workflow.started_at.isoformat(),
                "duration": self.calculate_duration(workflow),
                "artifacts": dict(workflow.artifacts),
                "errors": len(workflow.errors),
                "last_error": last_error,
            }

    def get_statistics(self) -> dict[str, Any]:
        with self.store.lock:
            workflows = list(self._workflows.values())
            archived = len(self.store.state.archived)

        def _count(status: WorkflowStatus) -> int:
            return sum(1 for w in workflows if w.status is status)

        return {
            "total": len(workflows),
            "active": _count(WorkflowStatus.ACTIVE),
            "completed": _count(WorkflowStatus.COMPLETED),
            "failed": _count(WorkflowStatus.FAILED),
            "cancelled": _count(WorkflowStatus.CANCELLED),
            "archived": archived,
            "state_file_size": self.store.state_file_size(),
        }

    def list_templates(self) -> list[dict[str, Any]]:
        return self.templates.list_templates()

    def register_template(self, template: WorkflowTemplate | dict[str, Any]) -> WorkflowTemplate:
        return self.templates.register(template)

    # -- maintenance --------------------------------------------------------

    def clean_stale_workflows(self) -> int:
        """Force-fail ACTIVE workflows started more than ``stale_workflow_hours`` ago."""

        hours = self.settings.stale_workflow_hours
        cutoff = timedelta(hours=hours)
        cleaned = 0

        with self.store.lock:
            now = self._clock()
            for workflow in list(self._workflows.values()):
                if not workflow.is_active or now - workflow.started_at <= cutoff:
                    continue
                failed_at = self._force_fail(workflow, now)
                reason = f"Workflow timed out ({hours:g} hours)"
                self._append_error(workflow, reason)
                cleaned += 1
                logger.warning(
                    "Stale workflow failed",
                    extra={"workflow_id": workflow.id, "business_key": workflow.business_key},
                )
                self._publish(
                    WorkflowEvents.WORKFLOW_FAILED,
                    workflow,
                    reason=reason,
                    failed_at_stage=failed_at,
                    artifacts=dict(workflow.artifacts),
                    errors=[e.model_dump(mode="json") for e in workflow.errors],
                    duration=self.calculate_duration(workflow),
                )

            if cleaned:
                self.store.mark_dirty()
        return cleaned

    def archive_old_workflows(self, max_age_days: float | None = None) -> int:
        """Move terminal workflows older than ``max_age_days`` to the archive list."""

        days = self.settings.archive_max_age_days if max_age_days is None else max_age_days
        cutoff = timedelta(days=days)
        archived = 0

        with self.store.lock:
            now = self._clock()
            state = self.store.state
            for workflow_id, workflow in list(state.workflows.items()):
                if workflow.is_active or now - workflow.started_at <= cutoff:
                    continue
                state.archived.append(
                    ArchivedWorkflow(
                        id=workflow.id,
                        business_key=workflow.business_key,
                        status=workflow.status,
                        started_at=workflow.started_at,
                        completed_at=workflow.completed_at,
                        archived_at=now,
                    )
                )
                del state.workflows[workflow_id]
                archived += 1

            if archived:
                limit = self.settings.archive_max_entries
                if len(state.archived) > limit:
                    state.archived = state.archived[-limit:]
                self.store.mark_dirty()
                logger.info("Archived old workflows", extra={"count": archived})
        return archived

    def trim_history(self, workflow_id: str, max_entries: int | None = None) -> bool:
        """Bound a workflow's history, keeping its head and tail.

        Returns True when entries were removed.
        """

        limit = self.settings.history_max_entries if max_entries is None else max_entries
        self._check_history_bounds(limit)
        with self.store.lock:
            workflow = self._require(workflow_id)
            if len(workflow.history) <= limit:
                return False
            self._trim(workflow, limit)
            self.store.mark_dirty()
            return True

    def _trim(self, workflow: Workflow, max_entries: int) -> None:
        self._check_history_bounds(max_entries)
        head_size = self.settings.history_head_entries

        history = workflow.history
        head = history[:head_size]
        tail = history[-(max_entries - head_size - 1) :]
        removed = len(history) - len(head) - len(tail)
        marker = HistoryEntry(
            stage=WorkflowStage.HISTORY_TRIMMED,
            timestamp=self._clock(),
            agent=Agent.ORCHESTRATOR,
            message=f"Trimmed {removed} history entries",
        )
        workflow.history = [*head, marker, *tail]
        logger.debug(
            "History trimmed",
            extra={"workflow_id": workflow.id, "removed": removed},
        )
