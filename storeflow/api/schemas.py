"""
Pydantic Schemas for API Request/Response Models.

Workflow definitions and execution records are exposed as the engine
models themselves; the schemas here cover requests and the list/summary
envelopes around them.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime

from storeflow.engine.models import (
    Edge,
    Node,
    Trigger,
    Workflow,
    WorkflowEvent,
    WorkflowExecution,
)


# ============================================================
# Workflow Schemas
# ============================================================

class WorkflowCreateRequest(BaseModel):
    """Request to create a new workflow. Workflows are created disabled."""
    name: str = Field(..., description="Name of the workflow")
    slug: Optional[str] = Field(None, description="Unique slug (derived from the name if omitted)")
    description: str = Field("", description="What this workflow does")
    category: Optional[str] = Field(None, description="Free-form grouping, e.g. CART")
    trigger: Trigger = Field(default_factory=Trigger)
    nodes: List[Node] = Field(..., description="Nodes of the graph, exactly one TRIGGER")
    edges: List[Edge] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Order Confirmation",
            "trigger": {"type": "EVENT", "config": {"eventType": "order.created"}},
            "nodes": [
                {"id": "trigger", "type": "TRIGGER", "order": 0},
                {"id": "send", "type": "ACTION", "order": 1, "config": {
                    "action": "sendEmail",
                    "to": "{{event.email}}",
                    "subject": "Order #{{event.orderNumber}}",
                }},
                {"id": "done", "type": "END", "order": 2},
            ],
            "edges": [
                {"source": "trigger", "target": "send"},
                {"source": "send", "target": "done"},
            ],
        }
    })


class WorkflowUpdateRequest(BaseModel):
    """Partial update of a workflow definition."""
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    trigger: Optional[Trigger] = None
    nodes: Optional[List[Node]] = None
    edges: Optional[List[Edge]] = None
    variables: Optional[Dict[str, Any]] = None


class WorkflowListResponse(BaseModel):
    """Response listing workflows (latest versions)."""
    workflows: List[Workflow]
    total: int


class WorkflowStatusResponse(BaseModel):
    """Enabled state and execution statistics of a workflow."""
    id: str
    name: str
    slug: str
    enabled: bool
    version: int
    trigger_type: str
    registered: bool
    execution_count: int
    success_count: int
    failure_count: int
    success_rate: float = Field(..., description="Percentage of COMPLETED executions")
    last_run_at: Optional[datetime] = None


class BulkToggleRequest(BaseModel):
    """Workflows to enable or disable in one call."""
    workflow_ids: List[str] = Field(..., description="Ids of the workflows")


class ValidationReport(BaseModel):
    """Dry-run result of enabling a workflow."""
    can_enable: bool
    errors: List[str]


class WorkflowRunRequest(BaseModel):
    """Manual trigger of a workflow."""
    event_type: str = Field("manual", description="Type of the synthesized trigger event")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Trigger payload")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "event_type": "cart.abandoned",
            "payload": {"cartId": "cart_123"},
        }
    })


# ============================================================
# Execution Schemas
# ============================================================

class ExecutionListResponse(BaseModel):
    """Response listing executions, newest first."""
    executions: List[WorkflowExecution]
    total: int


# ============================================================
# Event Schemas
# ============================================================

class EventPublishRequest(BaseModel):
    """A domain event to publish on the bus."""
    type: str = Field(..., description="Event type, e.g. order.created")
    payload: Dict[str, Any] = Field(default_factory=dict)
    source: Optional[str] = None
    timestamp: Optional[datetime] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "type": "subscription.payment_failed",
            "payload": {"subscriptionId": "sub_42"},
            "source": "billing",
        }
    })


class EventPublishResponse(BaseModel):
    """Executions scheduled for a published event."""
    event_id: str
    execution_ids: List[str]
    count: int


class EventHistoryResponse(BaseModel):
    events: List[WorkflowEvent]
    total: int


class SubscriptionInfo(BaseModel):
    id: str
    workflow_id: str
    pattern: str
    priority: int
    filters: Dict[str, Any]


# ============================================================
# Template Schemas
# ============================================================

class TemplateInfo(BaseModel):
    """Summary of a canned workflow template."""
    slug: str
    name: str
    description: str
    category: str
    tags: List[str]
    trigger_type: str
    node_count: int


class TemplateListResponse(BaseModel):
    templates: List[TemplateInfo]
    total: int


class TemplateInstallRequest(BaseModel):
    """Options for installing a template."""
    name: Optional[str] = Field(None, description="Workflow name (defaults to the template name)")
    config_overrides: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict,
        description="Per node id, config keys merged over the template's",
    )


# ============================================================
# Error Schemas
# ============================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[Any] = None
    status_code: int
