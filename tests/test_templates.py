"""
Tests for the template catalog, installation and React Flow conversion.
"""

import pytest
from datetime import datetime, timedelta, timezone

from storeflow.adapters.collaborators import InMemoryDataAccess
from storeflow.engine.errors import TemplateNotFoundError
from storeflow.engine.graph import validate_workflow
from storeflow.engine.models import ExecutionStatus, NodeStatus, NodeType
from storeflow.runtime import build_runtime
from storeflow.templates import (
    TEMPLATES,
    auto_layout,
    from_react_flow,
    get_template,
    install_template,
    list_templates,
    to_react_flow,
)

from factories import Clock, Harness, StubHttpClient, cart_recovery_workflow, event


def statuses(execution, node_id):
    return [r.status for r in execution.results_for(node_id)]


# ============================================================
# Catalog
# ============================================================

class TestCatalog:
    """Tests for the template catalog."""

    def test_catalog_contents(self):
        """Test the five canned automations are available."""
        assert set(TEMPLATES) == {
            "order-confirmation",
            "cart-abandonment",
            "low-stock-alert",
            "welcome-series",
            "subscription-lifecycle",
        }

    @pytest.mark.asyncio
    async def test_every_template_validates(self, harness):
        """Test every installed template passes graph validation."""
        for slug in TEMPLATES:
            workflow = await install_template(harness.workflows, slug)
            assert validate_workflow(workflow) == [], slug

    def test_category_filter(self):
        """Test category filtering is case-insensitive."""
        assert [t.slug for t in list_templates("cart")] == ["cart-abandonment"]
        assert len(list_templates()) == 5
        assert list_templates("nothing") == []

    def test_get_template_returns_copy(self):
        """Test callers cannot mutate the catalog."""
        template = get_template("order-confirmation")
        template.nodes[1].config["model"] = "Changed"

        assert get_template("order-confirmation").nodes[1].config["model"] == "Order"
        assert get_template("missing") is None


class TestInstall:
    """Tests for install_template."""

    @pytest.mark.asyncio
    async def test_install_is_disabled_copy(self, harness):
        """Test installing creates a disabled workflow with a -copy slug."""
        workflow = await install_template(harness.workflows, "order-confirmation")

        assert workflow.enabled is False
        assert workflow.slug == "order-confirmation-copy"
        assert workflow.name == "Order Confirmation"
        assert workflow.trigger.config["eventType"] == "order.created"
        assert workflow.category == "ORDER"

    @pytest.mark.asyncio
    async def test_slugs_stay_unique(self, harness):
        """Test repeated installs get numbered slugs."""
        slugs = [
            (await install_template(harness.workflows, "low-stock-alert", name=f"Alert {i}")).slug
            for i in range(3)
        ]

        assert slugs == ["low-stock-alert-copy", "low-stock-alert-copy-1", "low-stock-alert-copy-2"]

    @pytest.mark.asyncio
    async def test_config_overrides(self, harness):
        """Test overrides are merged into the named node's config."""
        workflow = await install_template(
            harness.workflows,
            "order-confirmation",
            config_overrides={"send_email": {"subject": "Custom subject"}},
        )
        send = workflow.get_node("send_email")

        assert send.config["subject"] == "Custom subject"
        assert send.config["to"] == "{{order.user.email}}"

    @pytest.mark.asyncio
    async def test_unknown_template(self, harness):
        """Test installing an unknown slug raises TemplateNotFoundError."""
        with pytest.raises(TemplateNotFoundError):
            await install_template(harness.workflows, "nope")


# ============================================================
# Templates end to end
# ============================================================

class TestTemplateRuns:
    """Tests running installed templates against in-memory data."""

    @pytest.mark.asyncio
    async def test_order_confirmation(self):
        """Test the confirmation email is rendered from the order."""
        harness = Harness(data_access=InMemoryDataAccess({"Order": [
            {"id": "o1", "orderNumber": "1001", "total": 59.9, "user": {"email": "buyer@example.com"}},
        ]}))
        workflow = await install_template(harness.workflows, "order-confirmation")

        execution = await harness.engine.execute(workflow, event("order.created", orderId="o1"))

        assert execution.status == ExecutionStatus.COMPLETED
        [email] = harness.sender.sent
        assert email["to"] == "buyer@example.com"
        assert email["subject"] == "Order Confirmation #1001"
        assert email["body"] == "Thanks for your order #1001. Total: 59.9"
        assert email["template"] == "order-confirmation"

    @pytest.mark.asyncio
    async def test_cart_abandonment(self):
        """Test the loop emails open carts and marks them."""
        data = InMemoryDataAccess({"Cart": [
            {"id": "c1", "checkedOut": False, "reminderSent": False, "user": {"email": "a@example.com"}},
            {"id": "c2", "checkedOut": True, "reminderSent": False, "user": {"email": "b@example.com"}},
        ]})
        harness = Harness(data_access=data)
        workflow = await install_template(harness.workflows, "cart-abandonment")

        execution = await harness.engine.execute(workflow, event("schedule.fired"))

        assert execution.status == ExecutionStatus.COMPLETED
        assert [m["to"] for m in harness.sender.sent] == ["a@example.com"]
        assert data.records["Cart"][0]["reminderSent"] is True
        assert data.records["Cart"][1]["reminderSent"] is False

    @pytest.mark.asyncio
    async def test_low_stock_alert(self):
        """Test a product under its threshold notifies the admin and the manager."""
        harness = Harness(data_access=InMemoryDataAccess({"Product": [
            {"id": "p1", "name": "Mug", "stock": 2, "lowStockThreshold": 5},
            {"id": "p2", "name": "Plate", "stock": 50, "lowStockThreshold": 5},
        ]}))
        workflow = await install_template(harness.workflows, "low-stock-alert")

        low = await harness.engine.execute(workflow, event("inventory.low", productId="p1"))
        fine = await harness.engine.execute(workflow, event("inventory.low", productId="p2"))

        assert low.status == fine.status == ExecutionStatus.COMPLETED
        assert harness.notifier.notifications[0]["message"] == "Mug is running low (2 remaining)"
        assert [m["to"] for m in harness.sender.sent] == ["inventory@example.com"]
        assert statuses(fine, "notify_admin") == [NodeStatus.SKIPPED]

    @pytest.mark.asyncio
    async def test_welcome_series(self):
        """Test the series suspends twice and ends with the incentive for non-buyers."""
        start = datetime(2026, 2, 1, 8, 0, tzinfo=timezone.utc)
        clock = Clock(start)
        harness = Harness(
            data_access=InMemoryDataAccess({
                "User": [{"id": "u1", "email": "ann@example.com", "name": "Ann"}],
                "Order": [],
            }),
            clock=clock,
        )
        workflow = await install_template(harness.workflows, "welcome-series")

        execution = await harness.engine.execute(workflow, event("user.created", userId="u1"))
        assert execution.status == ExecutionStatus.RUNNING
        assert [m["subject"] for m in harness.sender.sent] == ["Welcome, Ann!"]

        clock.now = start + timedelta(days=2)
        [second] = await harness.engine.resume_due()
        assert second.status == ExecutionStatus.RUNNING
        assert len(harness.sender.sent) == 2

        clock.now = start + timedelta(days=7)
        [final] = await harness.engine.resume_due()
        assert final.status == ExecutionStatus.COMPLETED
        assert harness.sender.sent[-1]["subject"] == "A special offer just for you!"

    @pytest.mark.asyncio
    async def test_subscription_lifecycle_routes_by_type(self, test_settings):
        """Test a payment failure runs exactly one handler through the event bus."""
        runtime = build_runtime(
            test_settings,
            data_access=InMemoryDataAccess({"Subscription": [
                {"id": "s1", "userId": "u1", "user": {"email": "sub@example.com"}, "plan": {"name": "Pro"}},
            ]}),
            http_client=StubHttpClient(),
        )
        workflow = await install_template(runtime.workflows, "subscription-lifecycle")
        await runtime.toggle.enable(workflow.id)

        ids = await runtime.bus.publish(event("subscription.payment_failed", subscriptionId="s1"))
        await runtime.bus.drain()

        assert len(ids) == 1
        execution = await runtime.executions.get(ids[0])
        assert execution.status == ExecutionStatus.COMPLETED
        assert statuses(execution, "handle_payment_failed") == [NodeStatus.SUCCEEDED]
        for other in ("handle_created", "handle_renewed", "handle_cancelled"):
            assert statuses(execution, other) == [NodeStatus.SKIPPED]
        assert statuses(execution, "record_event") == [NodeStatus.SUCCEEDED]
        [analytics] = runtime.adapter.data_access.records["AnalyticsEvent"]
        assert analytics["eventType"] == "subscription.payment_failed"
        assert analytics["userId"] == "u1"


# ============================================================
# React Flow
# ============================================================

class TestReactFlow:
    """Tests for React Flow conversion."""

    def test_round_trip(self):
        """Test a template survives conversion to React Flow and back."""
        template = get_template("cart-abandonment")
        workflow = from_react_flow({
            "name": template.name,
            "trigger": template.trigger.model_dump(mode="json"),
            "nodes": [{"id": n.id, "type": "x", "data": {
                "label": n.name, "stepType": n.type.value, "order": n.order,
                "config": n.config, "conditions": n.conditions,
            }} for n in template.nodes],
            "edges": [e.model_dump() for e in template.edges],
        })

        restored = from_react_flow(to_react_flow(workflow))

        assert restored.id == workflow.id
        assert restored.nodes == workflow.nodes
        assert restored.edges == workflow.edges
        assert restored.trigger == workflow.trigger

    def test_node_types_and_edge_labels(self):
        """Test editor node types and labelled edges."""
        data = to_react_flow(cart_recovery_workflow())

        types = {n["id"]: n["type"] for n in data["nodes"]}
        assert types["send_email"] == "primitive"
        assert types["done"] == "output"
        assert data["edges"][0]["id"] == "e0-trigger-find_cart"

    def test_source_handle_becomes_label(self):
        """Test a non-default source handle is read as the edge label."""
        workflow = from_react_flow({
            "nodes": [
                {"id": "t", "type": "trigger"},
                {"id": "c", "type": "condition"},
                {"id": "d", "type": "output"},
            ],
            "edges": [
                {"source": "t", "target": "c", "sourceHandle": "output"},
                {"source": "c", "target": "d", "sourceHandle": "true"},
            ],
        })

        assert workflow.name == "Untitled workflow"
        assert [n.type for n in workflow.nodes] == [NodeType.TRIGGER, NodeType.CONDITION, NodeType.END]
        assert [e.label for e in workflow.edges] == [None, "true"]

    def test_unknown_node_type(self):
        """Test unmapped editor node types are rejected."""
        with pytest.raises(ValueError, match="Unknown node type"):
            from_react_flow({"nodes": [{"id": "x", "type": "sparkles"}], "edges": []})

    def test_auto_layout(self):
        """Test rows follow BFS depth and are centered."""
        positions = auto_layout(cart_recovery_workflow())

        assert positions["trigger"] == {"x": 0.0, "y": 0}
        assert positions["send_email"] == {"x": -100.0, "y": 300}
        assert positions["done"] == {"x": 100.0, "y": 300}
