"""
Workflow Template Catalog.

Canned store automations, each one a complete node/edge graph that can be
installed as a new (disabled) workflow:

1. Order confirmation      order.created -> load order -> email
2. Cart abandonment        every 6 hours -> find carts -> loop -> email + mark
3. Low-stock alert         inventory.low -> check level -> notify + email
4. Welcome series          user.created -> email -> wait -> email -> wait -> incentive?
5. Subscription lifecycle  subscription.* -> route by event type -> email
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from storeflow.engine.models import (
    Edge,
    Node,
    NodeType,
    Trigger,
    TriggerType,
    LOOP_BODY_LABEL,
)


class WorkflowTemplate(BaseModel):
    """A canned workflow definition."""
    slug: str
    name: str
    description: str = ""
    category: str
    tags: List[str] = Field(default_factory=list)
    trigger: Trigger
    nodes: List[Node]
    edges: List[Edge]
    variables: Dict[str, Any] = Field(default_factory=dict)


def _node(node_id: str, name: str, node_type: NodeType, order: int, **fields: Any) -> Node:
    return Node(id=node_id, name=name, type=node_type, order=order, **fields)


def _chain(*node_ids: str) -> List[Edge]:
    """Edges linking the given nodes one after the other."""
    return [Edge(source=a, target=b) for a, b in zip(node_ids, node_ids[1:])]


# ============================================================
# Templates
# ============================================================

ORDER_CONFIRMATION = WorkflowTemplate(
    slug="order-confirmation",
    name="Order Confirmation",
    description="Send an order confirmation email when a new order is placed.",
    category="ORDER",
    tags=["order", "email", "essential"],
    trigger=Trigger(type=TriggerType.EVENT, config={"eventType": "order.created"}),
    nodes=[
        _node("trigger", "Order Created", NodeType.TRIGGER, 0),
        _node("load_order", "Load Order Details", NodeType.DATABASE, 1, config={
            "operation": "findUnique",
            "model": "Order",
            "where": {"id": "{{event.orderId}}"},
            "include": ["items", "user"],
        }),
        _node("format_email", "Format Email Content", NodeType.TRANSFORM, 2, config={
            "operation": "template",
            "template": "Thanks for your order #{{order.orderNumber}}. Total: {{order.total}}",
            "output": "email",
        }),
        _node("send_email", "Send Confirmation Email", NodeType.ACTION, 3, config={
            "action": "sendEmail",
            "template": "order-confirmation",
            "to": "{{order.user.email}}",
            "subject": "Order Confirmation #{{order.orderNumber}}",
            "body": "{{email.text}}",
        }),
        _node("done", "Log Completion", NodeType.END, 4, config={
            "logMessage": "Order confirmation sent for order {{order.orderNumber}}",
        }),
    ],
    edges=_chain("trigger", "load_order", "format_email", "send_email", "done"),
)


CART_ABANDONMENT = WorkflowTemplate(
    slug="cart-abandonment",
    name="Cart Abandonment Recovery",
    description="Email customers who left items in their cart.",
    category="CART",
    tags=["cart", "recovery", "email", "marketing"],
    trigger=Trigger(type=TriggerType.SCHEDULE, config={"cron": "0 */6 * * *", "timezone": "UTC"}),
    nodes=[
        _node("trigger", "Every 6 Hours", NodeType.TRIGGER, 0),
        _node("find_carts", "Find Abandoned Carts", NodeType.DATABASE, 1, config={
            "operation": "findMany",
            "model": "Cart",
            "where": {"checkedOut": False, "reminderSent": False},
            "include": ["user", "items"],
        }),
        _node("has_carts", "Any Abandoned Carts?", NodeType.CONDITION, 2, conditions={
            "if": "{{carts.length > 0}}",
            "then": "each_cart",
            "else": "done",
        }),
        _node("each_cart", "Loop Through Carts", NodeType.LOOP, 3, config={
            "items": "carts",
            "itemVariable": "cart",
        }),
        _node("send_recovery", "Send Recovery Email", NodeType.ACTION, 4, config={
            "action": "sendEmail",
            "template": "cart-abandonment",
            "to": "{{cart.user.email}}",
            "subject": "You left something behind!",
        }),
        _node("mark_sent", "Mark Reminder Sent", NodeType.DATABASE, 5, config={
            "operation": "update",
            "model": "Cart",
            "where": {"id": "{{cart.id}}"},
            "data": {"reminderSent": True},
        }),
        _node("done", "Log Completion", NodeType.END, 6, config={
            "logMessage": "Processed {{carts.length}} abandoned carts",
        }),
    ],
    edges=[
        *_chain("trigger", "find_carts", "has_carts"),
        Edge(source="has_carts", target="each_cart"),
        Edge(source="has_carts", target="done"),
        Edge(source="each_cart", target="send_recovery", label=LOOP_BODY_LABEL),
        Edge(source="send_recovery", target="mark_sent"),
        Edge(source="each_cart", target="done"),
    ],
)


LOW_STOCK_ALERT = WorkflowTemplate(
    slug="low-stock-alert",
    name="Low Stock Alert",
    description="Alert administrators when product inventory falls below its threshold.",
    category="INVENTORY",
    tags=["inventory", "alert", "essential"],
    trigger=Trigger(type=TriggerType.EVENT, config={"eventType": "inventory.low"}),
    variables={"inventoryManagerEmail": "inventory@example.com"},
    nodes=[
        _node("trigger", "Inventory Low", NodeType.TRIGGER, 0),
        _node("load_product", "Load Product Details", NodeType.DATABASE, 1, config={
            "operation": "findUnique",
            "model": "Product",
            "where": {"id": "{{event.productId}}"},
        }),
        _node("check_stock", "Check Stock Level", NodeType.CONDITION, 2, conditions={
            "if": "{{product.stock <= product.lowStockThreshold}}",
            "then": "notify_admin",
            "else": "done",
        }),
        _node("notify_admin", "Notify Admin Team", NodeType.NOTIFICATION, 3, config={
            "channel": "admin",
            "type": "warning",
            "title": "Low Stock Alert",
            "message": "{{product.name}} is running low ({{product.stock}} remaining)",
        }),
        _node("email_manager", "Email Inventory Manager", NodeType.ACTION, 4, config={
            "action": "sendEmail",
            "template": "low-stock-alert",
            "to": "{{variables.inventoryManagerEmail}}",
            "subject": "Low Stock: {{product.name}}",
        }),
        _node("done", "Log Alert", NodeType.END, 5, config={
            "logMessage": "Low stock check finished for {{event.productId}}",
        }),
    ],
    edges=[
        *_chain("trigger", "load_product", "check_stock", "notify_admin", "email_manager", "done"),
        Edge(source="check_stock", target="done"),
    ],
)


WELCOME_SERIES = WorkflowTemplate(
    slug="welcome-series",
    name="Welcome Series",
    description="A timed sequence of welcome emails for new customers.",
    category="CUSTOMER",
    tags=["welcome", "onboarding", "email"],
    trigger=Trigger(type=TriggerType.EVENT, config={"eventType": "user.created"}),
    nodes=[
        _node("trigger", "New User", NodeType.TRIGGER, 0),
        _node("load_user", "Load User Details", NodeType.DATABASE, 1, config={
            "operation": "findUnique",
            "model": "User",
            "where": {"id": "{{event.userId}}"},
        }),
        _node("send_welcome", "Send Welcome Email", NodeType.ACTION, 2, config={
            "action": "sendEmail",
            "template": "welcome-email",
            "to": "{{user.email}}",
            "subject": "Welcome, {{user.name}}!",
        }),
        _node("wait_2_days", "Wait 2 Days", NodeType.DELAY, 3, config={"duration": 2, "unit": "days"}),
        _node("send_getting_started", "Send Getting Started Email", NodeType.ACTION, 4, config={
            "action": "sendEmail",
            "template": "getting-started",
            "to": "{{user.email}}",
            "subject": "Getting started",
        }),
        _node("wait_5_days", "Wait 5 Days", NodeType.DELAY, 5, config={"duration": 5, "unit": "days"}),
        _node("find_first_order", "Check First Purchase", NodeType.DATABASE, 6, config={
            "operation": "findFirst",
            "model": "Order",
            "where": {"userId": "{{user.id}}"},
        }),
        _node("has_purchased", "Branch on Purchase", NodeType.CONDITION, 7, conditions={
            "if": "{{order == null}}",
            "then": "send_incentive",
            "else": "done",
        }),
        _node("send_incentive", "Send First Purchase Incentive", NodeType.ACTION, 8, config={
            "action": "sendEmail",
            "template": "first-purchase-incentive",
            "to": "{{user.email}}",
            "subject": "A special offer just for you!",
        }),
        _node("done", "Log Completion", NodeType.END, 9, config={
            "logMessage": "Welcome series completed for {{user.email}}",
        }),
    ],
    edges=[
        *_chain(
            "trigger", "load_user", "send_welcome", "wait_2_days", "send_getting_started",
            "wait_5_days", "find_first_order", "has_purchased", "send_incentive", "done",
        ),
        Edge(source="has_purchased", target="done"),
    ],
)


_SUBSCRIPTION_HANDLERS = [
    ("handle_created", "subscription.created", "subscription-welcome", "Welcome to {{subscription.plan.name}}!"),
    ("handle_renewed", "subscription.renewed", "subscription-renewed", "Thanks for staying with us!"),
    ("handle_cancelled", "subscription.cancelled", "subscription-cancelled", "We are sorry to see you go"),
    ("handle_payment_failed", "subscription.payment_failed", "payment-failed", "Action required: payment failed"),
]

SUBSCRIPTION_LIFECYCLE = WorkflowTemplate(
    slug="subscription-lifecycle",
    name="Subscription Lifecycle",
    description="React to subscription renewals, cancellations and payment failures.",
    category="SUBSCRIPTION",
    tags=["subscription", "billing", "email"],
    trigger=Trigger(type=TriggerType.EVENT, config={"eventType": "subscription.*"}),
    nodes=[
        _node("trigger", "Subscription Event", NodeType.TRIGGER, 0),
        _node("load_subscription", "Load Subscription Details", NodeType.DATABASE, 1, config={
            "operation": "findUnique",
            "model": "Subscription",
            "where": {"id": "{{event.subscriptionId}}"},
            "include": ["user", "plan"],
        }),
        _node("route", "Route by Event Type", NodeType.CONDITION, 2, conditions={
            "switch": "{{event.type}}",
            "cases": {event_type: node_id for node_id, event_type, _, _ in _SUBSCRIPTION_HANDLERS},
        }),
        *[
            _node(node_id, f"Email for {event_type}", NodeType.ACTION, 3 + i, config={
                "action": "sendEmail",
                "template": template,
                "to": "{{subscription.user.email}}",
                "subject": subject,
            })
            for i, (node_id, event_type, template, subject) in enumerate(_SUBSCRIPTION_HANDLERS)
        ],
        _node("record_event", "Update Analytics", NodeType.DATABASE, 7, config={
            "operation": "create",
            "model": "AnalyticsEvent",
            "data": {
                "eventType": "{{event.type}}",
                "userId": "{{subscription.userId}}",
            },
            "output": "analyticsEvent",
        }),
        _node("done", "Log Result", NodeType.END, 8, config={
            "logMessage": "Handled {{event.type}} for subscription {{event.subscriptionId}}",
        }),
    ],
    edges=[
        *_chain("trigger", "load_subscription", "route"),
        *[Edge(source="route", target=node_id) for node_id, _, _, _ in _SUBSCRIPTION_HANDLERS],
        *[Edge(source=node_id, target="record_event") for node_id, _, _, _ in _SUBSCRIPTION_HANDLERS],
        Edge(source="record_event", target="done"),
    ],
)


TEMPLATES: Dict[str, WorkflowTemplate] = {
    template.slug: template
    for template in (
        ORDER_CONFIRMATION,
        CART_ABANDONMENT,
        LOW_STOCK_ALERT,
        WELCOME_SERIES,
        SUBSCRIPTION_LIFECYCLE,
    )
}


def list_templates(category: Optional[str] = None) -> List[WorkflowTemplate]:
    """All templates, optionally filtered by category (case-insensitive)."""
    return [
        t for t in TEMPLATES.values()
        if category is None or t.category.lower() == category.lower()
    ]


def get_template(slug: str) -> Optional[WorkflowTemplate]:
    template = TEMPLATES.get(slug)
    return template.model_copy(deep=True) if template else None
