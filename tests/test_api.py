"""
Tests for the FastAPI endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from storeflow.main import create_app
from storeflow.templates.react_flow import to_react_flow

from factories import cart_recovery_workflow


def workflow_payload(**overrides):
    workflow = cart_recovery_workflow().model_dump(mode="json")
    payload = {key: workflow[key] for key in ("name", "trigger", "nodes", "edges")}
    payload.update(overrides)
    return payload


@pytest.fixture
def client(test_settings, runtime):
    with TestClient(create_app(test_settings, runtime)) as test_client:
        yield test_client


@pytest.fixture
def created(client):
    response = client.post("/workflows", json=workflow_payload())
    assert response.status_code == 201
    return response.json()


# ============================================================
# Root
# ============================================================

class TestRootEndpoints:
    """Tests for root endpoints."""

    def test_root(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200

        data = response.json()
        assert data["name"] == "StoreFlow"
        assert set(data["endpoints"]) == {"workflows", "executions", "events", "templates"}

    def test_health(self, client, created):
        """Test health endpoint counts."""
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["workflows_count"] == 1
        assert data["suspended_count"] == 0


# ============================================================
# Workflows
# ============================================================

class TestWorkflowEndpoints:
    """Tests for workflow CRUD and lifecycle endpoints."""

    def test_create(self, created):
        """Test a created workflow is disabled with a derived slug."""
        assert created["slug"] == "cart-recovery"
        assert created["enabled"] is False
        assert created["version"] == 1

    def test_create_derives_unique_slug(self, client, created):
        """Test a second workflow with the same name gets a numbered slug."""
        response = client.post("/workflows", json=workflow_payload())

        assert response.json()["slug"] == "cart-recovery-1"

    def test_create_slug_conflict(self, client, created):
        """Test an explicit slug already in use is rejected."""
        response = client.post("/workflows", json=workflow_payload(slug="cart-recovery"))

        assert response.status_code == 409

    def test_list_with_enabled_filter(self, client, created):
        """Test listing and filtering by enabled state."""
        assert client.get("/workflows").json()["total"] == 1
        assert client.get("/workflows", params={"enabled": "true"}).json()["total"] == 0

        client.post(f"/workflows/{created['id']}/enable")

        enabled = client.get("/workflows", params={"enabled": "true"}).json()
        assert [w["id"] for w in enabled["workflows"]] == [created["id"]]

    def test_get_and_404(self, client, created):
        """Test getting a workflow by id."""
        assert client.get(f"/workflows/{created['id']}").json()["name"] == "Cart Recovery"
        assert client.get("/workflows/missing").status_code == 404

    def test_update_enabled_creates_version(self, client, created):
        """Test editing an enabled workflow stores a new version."""
        client.post(f"/workflows/{created['id']}/enable")

        response = client.put(f"/workflows/{created['id']}", json={"description": "v2"})

        assert response.status_code == 200
        assert response.json()["version"] == 2
        old = client.get(f"/workflows/{created['id']}", params={"version": 1}).json()
        assert old["description"] == ""

    def test_update_unknown(self, client):
        """Test updating an unknown workflow is a 404."""
        assert client.put("/workflows/missing", json={"name": "x"}).status_code == 404

    def test_delete(self, client, created):
        """Test deleting a workflow."""
        assert client.delete(f"/workflows/{created['id']}").status_code == 204
        assert client.delete(f"/workflows/{created['id']}").status_code == 404

    def test_enable_and_disable(self, client, created):
        """Test enable registers a subscription and disable removes it."""
        response = client.post(f"/workflows/{created['id']}/enable")
        assert response.status_code == 200
        assert response.json()["enabled"] is True

        [subscription] = client.get("/events/subscriptions").json()
        assert subscription["pattern"] == "cart.abandoned"

        assert client.post(f"/workflows/{created['id']}/disable").json()["enabled"] is False
        assert client.get("/events/subscriptions").json() == []

    def test_enable_invalid_graph(self, client):
        """Test enabling an invalid graph returns the validation errors."""
        draft = client.post("/workflows", json=workflow_payload(name="Draft", edges=[])).json()

        response = client.post(f"/workflows/{draft['id']}/enable")

        assert response.status_code == 400
        assert response.json()["detail"]["errors"]

        report = client.get(f"/workflows/{draft['id']}/validate").json()
        assert report["can_enable"] is False

    def test_status(self, client, created):
        """Test the status endpoint."""
        client.post(f"/workflows/{created['id']}/run", json={"event_type": "cart.abandoned"})

        status = client.get(f"/workflows/{created['id']}/status").json()

        assert status["execution_count"] == 1
        assert status["success_rate"] == 100.0
        assert client.get("/workflows/missing/status").status_code == 404

    def test_run(self, client, created):
        """Test a manual run returns the finished execution."""
        response = client.post(
            f"/workflows/{created['id']}/run",
            json={"event_type": "cart.abandoned", "payload": {"cartId": "nope"}},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "COMPLETED"
        assert data["trigger_event"]["source"] == "api"
        assert client.post("/workflows/missing/run", json={}).status_code == 404


class TestFlowEndpoints:
    """Tests for React Flow export and import."""

    def test_export(self, client, created):
        """Test exporting a workflow as React Flow data."""
        data = client.get(f"/workflows/{created['id']}/flow").json()

        assert {n["id"] for n in data["nodes"]} == {"trigger", "find_cart", "has_items", "send_email", "done"}
        assert all("position" in n for n in data["nodes"])

    def test_import(self, client):
        """Test importing React Flow data creates a disabled workflow."""
        flow = to_react_flow(cart_recovery_workflow())

        response = client.post("/workflows/flow", json=flow)

        assert response.status_code == 201
        assert response.json()["enabled"] is False
        assert client.post("/workflows/flow", json=flow).status_code == 409

    def test_import_unknown_node_type(self, client):
        """Test unmappable flow data is a 400."""
        response = client.post("/workflows/flow", json={"nodes": [{"id": "x", "type": "sparkles"}]})

        assert response.status_code == 400


# ============================================================
# Executions
# ============================================================

class TestExecutionEndpoints:
    """Tests for execution endpoints."""

    def test_list_and_get(self, client, created):
        """Test listing executions by workflow and fetching one."""
        run = client.post(f"/workflows/{created['id']}/run", json={}).json()

        listed = client.get("/executions", params={"workflow_id": created["id"]}).json()
        assert [e["id"] for e in listed["executions"]] == [run["id"]]
        assert client.get("/executions", params={"status": "FAILED"}).json()["total"] == 0

        execution = client.get(f"/executions/{run['id']}").json()
        assert execution["workflow_id"] == created["id"]
        assert execution["node_results"]

    def test_get_missing(self, client):
        """Test an unknown execution is a 404."""
        assert client.get("/executions/missing").status_code == 404

    def test_cancel(self, client, created):
        """Test finished executions cannot be cancelled."""
        run = client.post(f"/workflows/{created['id']}/run", json={}).json()

        assert client.post(f"/executions/{run['id']}/cancel").status_code == 409
        assert client.post("/executions/missing/cancel").status_code == 404


# ============================================================
# Events
# ============================================================

class TestEventEndpoints:
    """Tests for event publishing and inspection."""

    def test_publish_starts_subscribed_workflows(self, client, runtime, created):
        """Test publishing an event schedules one execution per subscriber."""
        client.post(f"/workflows/{created['id']}/enable")

        response = client.post("/events", json={"type": "cart.abandoned", "payload": {"cartId": "c1"}})
        assert response.status_code == 202
        data = response.json()
        assert data["count"] == 1

        client.portal.call(runtime.bus.drain)

        execution = client.get(f"/executions/{data['execution_ids'][0]}").json()
        assert execution["status"] == "COMPLETED"
        assert execution["trigger_event"]["id"] == data["event_id"]

    def test_publish_without_subscribers(self, client):
        """Test an event nobody listens to is accepted and starts nothing."""
        response = client.post("/events", json={"type": "order.shipped"})

        assert response.status_code == 202
        assert response.json()["execution_ids"] == []

    def test_history(self, client):
        """Test published events show up in the history."""
        client.post("/events", json={"type": "a.one", "source": "test"})
        client.post("/events", json={"type": "a.two"})

        history = client.get("/events", params={"limit": 1}).json()

        assert [e["type"] for e in history["events"]] == ["a.two"]


# ============================================================
# Templates
# ============================================================

class TestTemplateEndpoints:
    """Tests for template endpoints."""

    def test_list(self, client):
        """Test listing templates with summaries."""
        data = client.get("/templates").json()

        assert data["total"] == 5
        summary = next(t for t in data["templates"] if t["slug"] == "order-confirmation")
        assert summary["trigger_type"] == "EVENT"
        assert client.get("/templates", params={"category": "cart"}).json()["total"] == 1

    def test_get(self, client):
        """Test getting a template and a missing one."""
        assert client.get("/templates/welcome-series").json()["name"] == "Welcome Series"
        assert client.get("/templates/missing").status_code == 404

    def test_install(self, client):
        """Test installing a template with overrides."""
        response = client.post("/templates/order-confirmation/install", json={
            "name": "My confirmations",
            "config_overrides": {"send_email": {"subject": "Thanks!"}},
        })

        assert response.status_code == 201
        workflow = response.json()
        assert workflow["name"] == "My confirmations"
        assert workflow["enabled"] is False
        send = next(n for n in workflow["nodes"] if n["id"] == "send_email")
        assert send["config"]["subject"] == "Thanks!"

    def test_install_without_body(self, client):
        """Test installing with defaults."""
        response = client.post("/templates/low-stock-alert/install")

        assert response.status_code == 201
        assert response.json()["slug"] == "low-stock-alert-copy"

    def test_install_unknown(self, client):
        """Test installing an unknown template is a 404."""
        assert client.post("/templates/nope/install").status_code == 404


# ============================================================
# Bulk lifecycle, statuses and webhooks
# ============================================================

WEBHOOK_PAYLOAD = {
    "name": "Refund Hook",
    "slug": "refund-hook",
    "category": "orders",
    "trigger": {"type": "WEBHOOK"},
    "nodes": [
        {"id": "trigger", "type": "TRIGGER", "order": 0},
        {"id": "note", "type": "NOTIFICATION", "order": 1, "config": {"title": "Refund {{event.refundId}}"}},
        {"id": "done", "type": "END", "order": 2},
    ],
    "edges": [
        {"source": "trigger", "target": "note"},
        {"source": "note", "target": "done"},
    ],
}


class TestBulkEndpoints:
    """Tests for bulk toggles, the status overview and webhooks."""

    def test_bulk_enable_and_disable(self, client, created):
        """Test bulk enable reports per-workflow results."""
        response = client.post("/workflows/bulk/enable", json={"workflow_ids": [created["id"], "missing"]})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["enabled_count"] == 1
        assert data["error_count"] == 1
        assert data["results"][0] == {"workflow_id": created["id"], "success": True, "enabled": True, "error": None}

        data = client.post("/workflows/bulk/disable", json={"workflow_ids": [created["id"]]}).json()
        assert data["success"] is True
        assert data["disabled_count"] == 1

    def test_enable_category(self, client):
        """Test enabling the workflows of a category."""
        hook = client.post("/workflows", json=WEBHOOK_PAYLOAD).json()
        assert hook["category"] == "orders"

        data = client.post("/workflows/category/ORDERS/enable").json()

        assert [r["workflow_id"] for r in data["results"]] == [hook["id"]]
        assert client.get(f"/workflows/{hook['id']}").json()["enabled"] is True

    def test_disable_trigger_type(self, client, created):
        """Test disabling by trigger type, given in any case."""
        client.post(f"/workflows/{created['id']}/enable")

        data = client.post("/workflows/trigger/event/disable").json()

        assert data["disabled_count"] == 1
        assert client.post("/workflows/trigger/carrier-pigeon/disable").status_code == 400

    def test_statuses_and_counts(self, client, created):
        """Test the status overview and per-trigger counts."""
        hook = client.post("/workflows", json=WEBHOOK_PAYLOAD).json()
        client.post(f"/workflows/{hook['id']}/enable")

        statuses = client.get("/workflows/statuses").json()
        assert [s["id"] for s in statuses] == [hook["id"], created["id"]]

        counts = client.get("/workflows/counts").json()
        assert counts == {"EVENT": 0, "SCHEDULE": 0, "MANUAL": 0, "WEBHOOK": 1}

    def test_webhook(self, client, runtime):
        """Test a webhook call runs the workflow by slug."""
        hook = client.post("/workflows", json=WEBHOOK_PAYLOAD).json()

        assert client.post("/workflows/webhook/refund-hook", json={"refundId": "rf_1"}).status_code == 409

        client.post(f"/workflows/{hook['id']}/enable")
        response = client.post("/workflows/webhook/refund-hook", json={"refundId": "rf_1"})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "COMPLETED"
        assert data["trigger_event"]["payload"] == {"refundId": "rf_1"}
        assert runtime.adapter.notifier.notifications[-1]["title"] == "Refund rf_1"
        assert client.get(f"/workflows/{hook['id']}").json()["last_run_at"] is not None

    def test_webhook_errors(self, client, created):
        """Test unknown slugs and non-webhook workflows are rejected."""
        assert client.post("/workflows/webhook/nope").status_code == 404

        client.post(f"/workflows/{created['id']}/enable")
        assert client.post(f"/workflows/webhook/{created['slug']}", json={}).status_code == 409
