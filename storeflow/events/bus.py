"""
Event Bus.

Pub/sub dispatcher between domain events and workflows. Publishing an
event matches its type against the subscription table, durably schedules
one execution per matching subscription and starts each one as its own
asyncio task.

Patterns:
    order.created     exact match
    subscription.*    any type starting with "subscription."
    *                 every event
"""

from typing import Any, Dict, List, Optional, Set
from collections import deque
import asyncio
import logging

from storeflow.engine.context import compare_values
from storeflow.engine.errors import ConditionEvaluationError
from storeflow.engine.executor import WorkflowEngine
from storeflow.engine.expressions import get_path
from storeflow.engine.models import EventSubscription, WorkflowEvent
from storeflow.storage.memory import WorkflowStorage


logger = logging.getLogger(__name__)


def matches_pattern(pattern: str, event_type: str) -> bool:
    """True if ``pattern`` matches ``event_type`` exactly or as a trailing wildcard."""
    if pattern == "*" or pattern == event_type:
        return True
    if pattern.endswith(".*"):
        return event_type.startswith(pattern[:-1])
    return False


def matches_filters(payload: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    """
    Check a payload against subscription filters.

    Each key is a dotted path into the payload. Its value is either a plain
    value (equality) or a dict of operators: $eq $ne $neq $gt $gte $lt $lte
    $in $nin $contains $exists.
    """
    for path, condition in (filters or {}).items():
        actual = get_path(payload, path)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for operator, expected in condition.items():
                if not compare_values(operator, actual, expected):
                    return False
        elif actual != condition:
            return False
    return True


class EventBus:
    """
    Matches published events to workflow subscriptions.

    The subscription table is read-mostly; it is mutated through the
    toggle service, which serializes changes per workflow.

    Usage:
        bus = EventBus(engine, workflow_storage)
        bus.subscribe(workflow.id, "cart.*")
        execution_ids = await bus.publish(WorkflowEvent(type="cart.abandoned", payload={...}))
    """

    def __init__(self, engine: WorkflowEngine, workflows: WorkflowStorage, history_size: int = 1000):
        self.engine = engine
        self.workflows = workflows
        self._subscriptions: Dict[str, EventSubscription] = {}
        self._history: deque = deque(maxlen=history_size)
        self._tasks: Set[asyncio.Task] = set()

    # ============================================================
    # Subscriptions
    # ============================================================

    def subscribe(
        self,
        workflow_id: str,
        pattern: str,
        priority: int = 0,
        filters: Optional[Dict[str, Any]] = None,
    ) -> EventSubscription:
        subscription = EventSubscription(
            workflow_id=workflow_id,
            pattern=pattern,
            priority=priority,
            filters=filters or {},
        )
        self._subscriptions[subscription.id] = subscription
        logger.info(f"Workflow {workflow_id} subscribed to '{pattern}' (priority {priority})")
        return subscription

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    def unsubscribe_workflow(self, workflow_id: str) -> int:
        """Remove every subscription of a workflow; returns how many were removed."""
        ids = [s.id for s in self._subscriptions.values() if s.workflow_id == workflow_id]
        for subscription_id in ids:
            del self._subscriptions[subscription_id]
        if ids:
            logger.info(f"Workflow {workflow_id} unsubscribed ({len(ids)} subscription(s))")
        return len(ids)

    def subscriptions(self, workflow_id: Optional[str] = None) -> List[EventSubscription]:
        return [
            s for s in self._subscriptions.values()
            if workflow_id is None or s.workflow_id == workflow_id
        ]

    def matching(self, event: WorkflowEvent) -> List[EventSubscription]:
        """Subscriptions matching an event, highest priority first."""
        matched = []
        for subscription in self._subscriptions.values():
            if not matches_pattern(subscription.pattern, event.type):
                continue
            try:
                if matches_filters(event.payload, subscription.filters):
                    matched.append(subscription)
            except ConditionEvaluationError as e:
                logger.warning(f"Ignoring subscription {subscription.id}: invalid filter ({e})")
        return sorted(matched, key=lambda s: s.priority, reverse=True)

    # ============================================================
    # Publishing
    # ============================================================

    async def publish(self, event: WorkflowEvent) -> List[str]:
        """
        Publish an event.

        Returns once every matching execution is persisted as PENDING,
        without waiting for the executions themselves. A failing subscriber
        is logged and never affects its siblings.

        Returns:
            Ids of the scheduled executions
        """
        self._history.append(event)
        execution_ids = []

        for subscription in self.matching(event):
            try:
                workflow = await self.workflows.get(subscription.workflow_id)
                if workflow is None or not workflow.enabled:
                    logger.warning(f"Subscription {subscription.id} points at a missing or disabled workflow")
                    continue
                execution = await self.engine.schedule(workflow, event)
            except Exception:
                logger.exception(f"Failed to schedule workflow {subscription.workflow_id} for '{event.type}'")
                continue

            execution_ids.append(execution.id)
            self.start_in_background(execution.id)

        logger.info(f"Published '{event.type}': {len(execution_ids)} execution(s) scheduled")
        return execution_ids

    async def emit(self, event_type: str, payload: Optional[Dict[str, Any]] = None, source: Optional[str] = None) -> List[str]:
        """Build and publish an event."""
        return await self.publish(WorkflowEvent(type=event_type, payload=payload or {}, source=source))

    def start_in_background(self, execution_id: str) -> asyncio.Task:
        """
        Start a scheduled execution as its own task.

        A crash is logged and never reaches the caller; ``drain`` waits for
        the task.
        """
        task = asyncio.create_task(self._run(execution_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, execution_id: str) -> None:
        try:
            await self.engine.start(execution_id)
        except Exception:
            logger.exception(f"Execution {execution_id} crashed")

    async def drain(self) -> None:
        """Wait for every background execution to finish or suspend."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def history(self, limit: int = 100) -> List[WorkflowEvent]:
        """Most recent events, oldest first."""
        events = list(self._history)
        return events[-limit:] if limit else events

    def clear(self) -> None:
        self._subscriptions.clear()
        self._history.clear()
