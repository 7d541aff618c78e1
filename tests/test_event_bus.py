"""
Tests for the event bus.
"""

import pytest

from storeflow.engine.models import (
    ExecutionStatus,
    NodeType,
    Trigger,
    TriggerType,
)
from storeflow.events import EventBus, matches_filters, matches_pattern

from factories import FailingSender, Harness, edge, event, make_workflow, node


def notify_workflow(name, pattern, enabled=True, action=None):
    """TRIGGER -> NOTIFICATION (or ACTION) -> END, subscribed to ``pattern``."""
    if action:
        step = node("step", NodeType.ACTION, 1, config=action)
    else:
        step = node("step", NodeType.NOTIFICATION, 1, config={"title": f"{name}: {{{{event.type}}}}"})
    return make_workflow(
        name=name,
        trigger=Trigger(type=TriggerType.EVENT, config={"eventType": pattern}),
        enabled=enabled,
        nodes=[node("trigger", NodeType.TRIGGER, 0), step, node("done", NodeType.END, 2)],
        edges=[edge("trigger", "step"), edge("step", "done")],
    )


async def subscribed(harness, bus, workflow, priority=0, filters=None):
    saved = await harness.workflows.save(workflow)
    bus.subscribe(saved.id, saved.trigger.config["eventType"], priority=priority, filters=filters)
    return saved


# ============================================================
# Matching
# ============================================================

class TestMatching:
    """Tests for pattern and filter matching."""

    def test_patterns(self):
        """Test exact, trailing wildcard and catch-all patterns."""
        assert matches_pattern("order.created", "order.created")
        assert not matches_pattern("order.created", "order.created.v2")
        assert matches_pattern("subscription.*", "subscription.payment_failed")
        assert not matches_pattern("subscription.*", "subscription")
        assert not matches_pattern("subscription.*", "subscriptions.created")
        assert matches_pattern("*", "anything.at.all")

    def test_plain_filters(self):
        """Test plain filter values compare by equality on dotted paths."""
        payload = {"channel": "web", "customer": {"tier": "gold"}}
        assert matches_filters(payload, {"channel": "web", "customer.tier": "gold"})
        assert not matches_filters(payload, {"channel": "pos"})
        assert matches_filters(payload, None)

    def test_operator_filters(self):
        """Test $-operator filters."""
        payload = {"total": 150, "tags": ["vip"]}
        assert matches_filters(payload, {"total": {"$gte": 100, "$lt": 200}})
        assert not matches_filters(payload, {"total": {"$gt": 150}})
        assert matches_filters(payload, {"tags": {"$contains": "vip"}})
        assert matches_filters(payload, {"coupon": {"$exists": False}})

    def test_dict_value_without_operators_is_equality(self):
        """Test a dict without $-keys is compared as a value."""
        assert matches_filters({"address": {"city": "Lyon"}}, {"address": {"city": "Lyon"}})


# ============================================================
# Publishing
# ============================================================

class TestEventBus:
    """Tests for EventBus."""

    @pytest.mark.asyncio
    async def test_wildcard_subscription_runs_once(self, harness):
        """Test a wildcard subscriber gets exactly one execution per matching event."""
        bus = EventBus(harness.engine, harness.workflows)
        workflow = await subscribed(harness, bus, notify_workflow("Subscriptions", "subscription.*"))

        ids = await bus.publish(event("subscription.payment_failed", subscriptionId="s1"))
        await bus.drain()

        assert len(ids) == 1
        execution = await harness.executions.get(ids[0])
        assert execution.workflow_id == workflow.id
        assert execution.status == ExecutionStatus.COMPLETED
        assert harness.notifier.notifications[0]["title"] == "Subscriptions: subscription.payment_failed"

    @pytest.mark.asyncio
    async def test_unrelated_events_schedule_nothing(self, harness):
        """Test events nobody subscribed to create no executions."""
        bus = EventBus(harness.engine, harness.workflows)
        await subscribed(harness, bus, notify_workflow("Orders", "order.created"))

        assert await bus.publish(event("order.shipped")) == []
        assert len(harness.executions) == 0

    @pytest.mark.asyncio
    async def test_priority_order(self, harness):
        """Test higher-priority subscriptions are scheduled first."""
        bus = EventBus(harness.engine, harness.workflows)
        low = await subscribed(harness, bus, notify_workflow("Low", "order.created"), priority=1)
        high = await subscribed(harness, bus, notify_workflow("High", "order.created"), priority=10)

        ids = await bus.publish(event("order.created"))
        await bus.drain()

        owners = [(await harness.executions.get(i)).workflow_id for i in ids]
        assert owners == [high.id, low.id]

    @pytest.mark.asyncio
    async def test_filters_select_subscribers(self, harness):
        """Test subscription filters narrow which events start a workflow."""
        bus = EventBus(harness.engine, harness.workflows)
        await subscribed(harness, bus, notify_workflow("Big", "order.created"), filters={"total": {"$gte": 100}})

        assert await bus.publish(event("order.created", total=20)) == []
        assert len(await bus.publish(event("order.created", total=250))) == 1
        await bus.drain()

    @pytest.mark.asyncio
    async def test_invalid_filter_is_ignored(self, harness):
        """Test a subscription with a broken filter never matches."""
        bus = EventBus(harness.engine, harness.workflows)
        await subscribed(harness, bus, notify_workflow("Broken", "order.created"), filters={"total": {"$between": [1, 2]}})

        assert await bus.publish(event("order.created", total=1)) == []

    @pytest.mark.asyncio
    async def test_disabled_and_missing_workflows_are_skipped(self, harness):
        """Test only enabled workflows are scheduled."""
        bus = EventBus(harness.engine, harness.workflows)
        await subscribed(harness, bus, notify_workflow("Off", "order.created", enabled=False))
        bus.subscribe("no-such-workflow", "order.created")
        live = await subscribed(harness, bus, notify_workflow("On", "order.created"))

        ids = await bus.publish(event("order.created"))
        await bus.drain()

        assert [(await harness.executions.get(i)).workflow_id for i in ids] == [live.id]

    @pytest.mark.asyncio
    async def test_failing_subscriber_is_isolated(self):
        """Test one failing execution does not affect its siblings."""
        harness = Harness(message_sender=FailingSender())
        bus = EventBus(harness.engine, harness.workflows)
        broken = await subscribed(harness, bus, notify_workflow(
            "Mailer", "order.created", action={"action": "sendEmail", "to": "a@example.com"},
        ))
        healthy = await subscribed(harness, bus, notify_workflow("Notifier", "order.created"))

        ids = await bus.publish(event("order.created"))
        await bus.drain()

        by_workflow = {e.workflow_id: e for e in [await harness.executions.get(i) for i in ids]}
        assert by_workflow[broken.id].status == ExecutionStatus.FAILED
        assert by_workflow[healthy.id].status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_executions_persisted_before_return(self, harness):
        """Test publish returns ids of already persisted executions."""
        bus = EventBus(harness.engine, harness.workflows)
        await subscribed(harness, bus, notify_workflow("Orders", "order.created"))

        ids = await bus.publish(event("order.created"))

        assert await harness.executions.get(ids[0]) is not None
        await bus.drain()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, harness):
        """Test removing subscriptions by id and by workflow."""
        bus = EventBus(harness.engine, harness.workflows)
        first = bus.subscribe("wf-1", "a.*")
        bus.subscribe("wf-1", "b.*")
        bus.subscribe("wf-2", "a.*")

        assert bus.unsubscribe(first.id) is True
        assert bus.unsubscribe(first.id) is False
        assert bus.unsubscribe_workflow("wf-1") == 1
        assert [s.workflow_id for s in bus.subscriptions()] == ["wf-2"]

    @pytest.mark.asyncio
    async def test_history(self, harness):
        """Test the bounded event history."""
        bus = EventBus(harness.engine, harness.workflows, history_size=2)
        for event_type in ("a", "b", "c"):
            await bus.emit(event_type, {"n": 1}, source="test")

        assert [e.type for e in bus.history()] == ["b", "c"]
        assert [e.type for e in bus.history(limit=1)] == ["c"]
        assert bus.history()[0].source == "test"
