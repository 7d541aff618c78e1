"""
Toggle / Lifecycle Service.

Enables and disables workflows. Enabling validates the graph and registers
the trigger: an EVENT trigger becomes an event bus subscription, a SCHEDULE
trigger becomes a schedule entry. MANUAL and WEBHOOK triggers register
nothing; a WEBHOOK workflow is started by slug through trigger_webhook.

Every mutation of one workflow's registration runs under that workflow's
own asyncio.Lock, so concurrent enable/disable/update calls for the same
id are applied one after the other.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
import asyncio
import logging

from storeflow.engine.errors import TriggerMismatchError, WorkflowNotFoundError, WorkflowValidationError
from storeflow.engine.executor import WorkflowEngine
from storeflow.engine.graph import WorkflowGraph
from storeflow.engine.models import (
    ExecutionStatus,
    TriggerType,
    Workflow,
    WorkflowEvent,
    WorkflowExecution,
    utcnow,
)
from storeflow.events.bus import EventBus
from storeflow.lifecycle.schedule import ScheduleRegistry
from storeflow.storage.memory import ExecutionStorage, WorkflowStorage


logger = logging.getLogger(__name__)


SCHEDULE_EVENT_TYPE = "schedule.fired"
WEBHOOK_EVENT_TYPE = "webhook.received"

# Fields of a workflow definition that update_definition may change
EDITABLE_FIELDS = ("name", "description", "category", "trigger", "nodes", "edges", "variables")


class BulkToggleItem(BaseModel):
    workflow_id: str
    success: bool
    enabled: Optional[bool] = None
    error: Optional[str] = None


class BulkToggleResult(BaseModel):
    """Per-workflow outcome of a bulk enable or disable."""
    success: bool = True
    results: List[BulkToggleItem] = Field(default_factory=list)
    enabled_count: int = 0
    disabled_count: int = 0
    error_count: int = 0


class ToggleService:
    """
    Owns the enabled state of workflows and their trigger registrations.

    Usage:
        toggle = ToggleService(workflows, executions, bus, schedules, engine)
        await toggle.enable(workflow.id)
        await toggle.disable(workflow.id)
    """

    def __init__(
        self,
        workflows: WorkflowStorage,
        executions: ExecutionStorage,
        bus: EventBus,
        schedules: ScheduleRegistry,
        engine: WorkflowEngine,
    ):
        self.workflows = workflows
        self.executions = executions
        self.bus = bus
        self.schedules = schedules
        self.engine = engine
        self._locks: Dict[str, asyncio.Lock] = {}
        self._locks_guard = asyncio.Lock()

    async def _lock_for(self, workflow_id: str) -> asyncio.Lock:
        async with self._locks_guard:
            return self._locks.setdefault(workflow_id, asyncio.Lock())

    async def _load(self, workflow_id: str) -> Workflow:
        workflow = await self.workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    # ============================================================
    # Enable / disable
    # ============================================================

    async def enable(self, workflow_id: str) -> Workflow:
        """
        Validate a workflow and register its trigger.

        Raises:
            WorkflowNotFoundError: Unknown workflow
            WorkflowValidationError: The graph is invalid; the workflow stays disabled
        """
        lock = await self._lock_for(workflow_id)
        async with lock:
            workflow = await self._load(workflow_id)
            errors = WorkflowGraph(workflow).validate()
            if errors:
                logger.warning(f"Cannot enable workflow '{workflow.name}': {errors}")
                raise WorkflowValidationError(errors)

            self._register(workflow)
            workflow.enabled = True
            saved = await self.workflows.save(workflow)
            logger.info(f"Enabled workflow '{workflow.name}' ({workflow.trigger.type.value})")
            return saved

    async def disable(self, workflow_id: str) -> Workflow:
        """Unregister a workflow's trigger. In-flight executions are left alone."""
        lock = await self._lock_for(workflow_id)
        async with lock:
            workflow = await self._load(workflow_id)
            self._unregister(workflow_id)
            if workflow.enabled:
                workflow.enabled = False
                workflow = await self.workflows.save(workflow)
                logger.info(f"Disabled workflow '{workflow.name}'")
            return workflow

    async def toggle(self, workflow_id: str, enabled: Optional[bool] = None) -> Workflow:
        """Flip the enabled state, or set it explicitly."""
        if enabled is None:
            enabled = not (await self._load(workflow_id)).enabled
        if enabled:
            return await self.enable(workflow_id)
        return await self.disable(workflow_id)

    async def disable_all(self) -> List[str]:
        """Emergency stop: disable every enabled workflow."""
        disabled = []
        for workflow in await self.workflows.list_all():
            if workflow.enabled:
                await self.disable(workflow.id)
                disabled.append(workflow.id)
        logger.warning(f"Disabled all workflows ({len(disabled)})")
        return disabled

    async def can_enable(self, workflow_id: str) -> Dict[str, Any]:
        """Dry-run of the enable validation."""
        errors = WorkflowGraph(await self._load(workflow_id)).validate()
        return {"can_enable": not errors, "errors": errors}

    # ============================================================
    # Bulk operations
    # ============================================================

    async def enable_many(self, workflow_ids: List[str]) -> BulkToggleResult:
        return await self._set_many(workflow_ids, True)

    async def disable_many(self, workflow_ids: List[str]) -> BulkToggleResult:
        return await self._set_many(workflow_ids, False)

    async def enable_by_category(self, category: str) -> BulkToggleResult:
        """Enable every workflow whose category matches, ignoring case."""
        ids = [
            w.id for w in await self.workflows.list_all()
            if w.category and w.category.lower() == category.lower()
        ]
        return await self._set_many(ids, True)

    async def disable_by_trigger(self, trigger_type: TriggerType) -> BulkToggleResult:
        """Disable every enabled workflow with the given trigger type."""
        ids = [
            w.id for w in await self.workflows.list_all()
            if w.enabled and w.trigger.type == trigger_type
        ]
        return await self._set_many(ids, False)

    async def _set_many(self, workflow_ids: List[str], enabled: bool) -> BulkToggleResult:
        """
        Enable or disable workflows one by one.

        A failure is recorded against its id and does not stop the others.
        """
        result = BulkToggleResult()
        for workflow_id in workflow_ids:
            try:
                workflow = await (self.enable(workflow_id) if enabled else self.disable(workflow_id))
            except (WorkflowNotFoundError, WorkflowValidationError) as e:
                result.results.append(BulkToggleItem(workflow_id=workflow_id, success=False, error=str(e)))
                result.error_count += 1
                continue

            result.results.append(BulkToggleItem(workflow_id=workflow_id, success=True, enabled=workflow.enabled))
            if enabled:
                result.enabled_count += 1
            else:
                result.disabled_count += 1

        result.success = result.error_count == 0
        logger.info(
            f"Bulk {'enable' if enabled else 'disable'}: {len(workflow_ids) - result.error_count} ok, "
            f"{result.error_count} failed"
        )
        return result

    # ============================================================
    # Definition changes
    # ============================================================

    async def update_definition(self, workflow_id: str, changes: Dict[str, Any]) -> Workflow:
        """
        Apply changes to a workflow definition.

        A disabled workflow is edited in place. An enabled workflow gets a
        new version, which must validate, and its trigger is re-registered;
        executions already scheduled keep the version they started with.
        """
        lock = await self._lock_for(workflow_id)
        async with lock:
            current = await self._load(workflow_id)
            data = current.model_dump()
            data.update({k: v for k, v in changes.items() if k in EDITABLE_FIELDS})
            candidate = Workflow.model_validate(data)

            if not current.enabled:
                return await self.workflows.save(candidate)

            errors = WorkflowGraph(candidate).validate()
            if errors:
                raise WorkflowValidationError(errors)
            candidate.version = current.version + 1
            self._register(candidate)
            saved = await self.workflows.save(candidate)
            logger.info(f"Workflow '{saved.name}' updated to v{saved.version} while enabled")
            return saved

    async def remove(self, workflow_id: str) -> bool:
        """Unregister and delete a workflow with all its versions."""
        lock = await self._lock_for(workflow_id)
        async with lock:
            self._unregister(workflow_id)
            return await self.workflows.delete(workflow_id)

    # ============================================================
    # Startup and scheduling
    # ============================================================

    async def initialize(self) -> int:
        """
        Re-register every enabled workflow, e.g. after a restart.

        Workflows that no longer validate are disabled.

        Returns:
            Number of registered workflows
        """
        registered = 0
        for workflow in await self.workflows.list_all():
            if not workflow.enabled:
                continue
            lock = await self._lock_for(workflow.id)
            async with lock:
                errors = WorkflowGraph(workflow).validate()
                if errors:
                    logger.warning(f"Disabling invalid workflow '{workflow.name}' at startup: {errors}")
                    workflow.enabled = False
                    await self.workflows.save(workflow)
                    continue
                self._register(workflow)
                registered += 1
        logger.info(f"Initialized {registered} enabled workflow(s)")
        return registered

    async def fire_due_schedules(self, now: Optional[datetime] = None) -> List[str]:
        """
        Schedule an execution for every entry due at ``now``.

        The executions are persisted before this returns and then run as
        background tasks of the event bus, so one failing workflow never
        holds up the others or the rest of the scheduler tick.

        Returns:
            Ids of the scheduled executions
        """
        now = now or utcnow()
        execution_ids = []
        for entry in self.schedules.due(now):
            try:
                workflow = await self.workflows.get(entry.workflow_id)
                if workflow is None or not workflow.enabled:
                    continue
                event = WorkflowEvent(
                    type=SCHEDULE_EVENT_TYPE,
                    source="scheduler",
                    payload={"workflowId": workflow.id, "cron": entry.cron, "scheduledAt": now.isoformat()},
                )
                execution = await self.engine.schedule(workflow, event)
            except Exception:
                logger.exception(f"Failed to schedule cron run of workflow {entry.workflow_id}")
                continue
            execution_ids.append(execution.id)
            self.bus.start_in_background(execution.id)
        return execution_ids

    async def trigger_webhook(self, slug: str, payload: Optional[Dict[str, Any]] = None) -> WorkflowExecution:
        """
        Run an enabled WEBHOOK workflow, addressed by slug, and wait for it.

        Raises:
            WorkflowNotFoundError: No workflow has this slug
            TriggerMismatchError: The workflow is disabled or not a WEBHOOK workflow
        """
        workflow = await self.workflows.get_by_slug(slug)
        if workflow is None:
            raise WorkflowNotFoundError(slug)
        if workflow.trigger.type != TriggerType.WEBHOOK:
            raise TriggerMismatchError(workflow.id, f"Workflow '{slug}' is not configured for webhook triggers")
        if not workflow.enabled:
            raise TriggerMismatchError(workflow.id, f"Workflow '{slug}' is disabled")

        event = WorkflowEvent(type=WEBHOOK_EVENT_TYPE, source="webhook", payload=payload or {})
        return await self.engine.execute(workflow, event)

    # ============================================================
    # Status
    # ============================================================

    async def status(self, workflow_id: str) -> Dict[str, Any]:
        """Execution counts, success rate and last run of a workflow."""
        return await self._status_of(await self._load(workflow_id))

    async def all_statuses(self) -> List[Dict[str, Any]]:
        """Status of every workflow, enabled ones first, then by name."""
        statuses = [await self._status_of(w) for w in await self.workflows.list_all()]
        return sorted(statuses, key=lambda s: (not s["enabled"], s["name"].lower()))

    async def enabled_counts(self) -> Dict[str, int]:
        counts = {t.value: 0 for t in TriggerType}
        for workflow in await self.workflows.list_all():
            if workflow.enabled:
                counts[workflow.trigger.type.value] += 1
        return counts

    async def _status_of(self, workflow: Workflow) -> Dict[str, Any]:
        workflow_id = workflow.id
        executions = await self.executions.list_by_workflow(workflow_id)

        succeeded = sum(1 for e in executions if e.status == ExecutionStatus.COMPLETED)
        failed = sum(1 for e in executions if e.status == ExecutionStatus.FAILED)
        runs = [e.started_at for e in executions if e.started_at]
        if workflow.last_run_at is not None:
            runs.append(workflow.last_run_at)

        return {
            "id": workflow.id,
            "name": workflow.name,
            "slug": workflow.slug,
            "enabled": workflow.enabled,
            "version": workflow.version,
            "trigger_type": workflow.trigger.type.value,
            "registered": self.is_registered(workflow_id),
            "execution_count": len(executions),
            "success_count": succeeded,
            "failure_count": failed,
            "success_rate": round(succeeded / len(executions) * 100, 2) if executions else 0.0,
            "last_run_at": max(runs) if runs else None,
        }

    def is_registered(self, workflow_id: str) -> bool:
        return bool(self.bus.subscriptions(workflow_id)) or self.schedules.get(workflow_id) is not None

    # ============================================================
    # Registration
    # ============================================================

    def _register(self, workflow: Workflow) -> None:
        self._unregister(workflow.id)
        trigger = workflow.trigger

        if trigger.type == TriggerType.EVENT:
            self.bus.subscribe(
                workflow.id,
                trigger.config["eventType"],
                priority=int(trigger.config.get("priority") or 0),
                filters=trigger.config.get("filters"),
            )
        elif trigger.type == TriggerType.SCHEDULE:
            self.schedules.register(
                workflow.id,
                trigger.config["cron"],
                trigger.config.get("timezone") or "UTC",
            )

    def _unregister(self, workflow_id: str) -> None:
        self.bus.unsubscribe_workflow(workflow_id)
        self.schedules.unregister(workflow_id)
