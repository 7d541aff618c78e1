"""
Builders and stub collaborators shared by the tests.
"""

from typing import Any, Dict, List, Optional

from storeflow.adapters.collaborators import (
    CollaboratorError,
    InMemoryDataAccess,
    InMemoryNotificationDispatcher,
    LoggingMessageSender,
)
from storeflow.adapters.primitive import PrimitiveAdapter
from storeflow.engine.executor import WorkflowEngine
from storeflow.engine.models import (
    Edge,
    Node,
    NodeType,
    Trigger,
    TriggerType,
    Workflow,
    WorkflowEvent,
)
from storeflow.storage.memory import CheckpointStorage, ExecutionStorage, WorkflowStorage


def node(node_id: str, node_type: NodeType, order: int = 0, **fields: Any) -> Node:
    return Node(id=node_id, name=node_id.replace("_", " ").title(), type=node_type, order=order, **fields)


def edge(source: str, target: str, **fields: Any) -> Edge:
    return Edge(source=source, target=target, **fields)


def event(event_type: str = "test.event", **payload: Any) -> WorkflowEvent:
    return WorkflowEvent(type=event_type, payload=payload)


def make_workflow(
    nodes: List[Node],
    edges: List[Edge],
    name: str = "Test Workflow",
    trigger: Optional[Trigger] = None,
    **fields: Any,
) -> Workflow:
    return Workflow(
        name=name,
        trigger=trigger or Trigger(type=TriggerType.MANUAL),
        nodes=nodes,
        edges=edges,
        **fields,
    )


def cart_recovery_workflow(event_type: str = "cart.abandoned") -> Workflow:
    """TRIGGER -> DATABASE(find cart) -> CONDITION(items > 0) -> ACTION(email) -> END."""
    return make_workflow(
        name="Cart Recovery",
        trigger=Trigger(type=TriggerType.EVENT, config={"eventType": event_type}),
        nodes=[
            node("trigger", NodeType.TRIGGER, 0),
            node("find_cart", NodeType.DATABASE, 1, config={
                "operation": "findUnique",
                "model": "Cart",
                "where": {"id": "{{event.cartId}}"},
            }),
            node("has_items", NodeType.CONDITION, 2, conditions={
                "if": "{{cart.items.length > 0}}",
                "then": "send_email",
                "else": "done",
            }),
            node("send_email", NodeType.ACTION, 3, config={
                "action": "sendEmail",
                "to": "{{cart.email}}",
                "subject": "You left {{cart.items.length}} items behind",
            }),
            node("done", NodeType.END, 4),
        ],
        edges=[
            edge("trigger", "find_cart"),
            edge("find_cart", "has_items"),
            edge("has_items", "send_email"),
            edge("has_items", "done"),
            edge("send_email", "done"),
        ],
    )


CARTS = [
    {"id": "cart_full", "email": "full@example.com", "items": [{"sku": "A"}, {"sku": "B"}]},
    {"id": "cart_empty", "email": "empty@example.com", "items": []},
]


# ============================================================
# Stub collaborators
# ============================================================

class FlakyDataAccess(InMemoryDataAccess):
    """Fails the first ``failures`` queries with the given failure, then behaves normally."""

    def __init__(self, failures: int, retryable: bool = True, kind: str = "data", **kwargs: Any):
        super().__init__(**kwargs)
        self.failures = failures
        self.retryable = retryable
        self.kind = kind
        self.attempts = 0

    async def query(self, operation: str, model: str, args: Dict[str, Any]) -> Any:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise CollaboratorError("database unavailable", kind=self.kind, retryable=self.retryable)
        return await super().query(operation, model, args)


class FailingSender(LoggingMessageSender):
    """Message sender whose sends always fail."""

    def __init__(self, retryable: bool = False):
        super().__init__()
        self.retryable = retryable
        self.attempts = 0

    async def send_email(self, to: str, subject: str, body: str, **options: Any) -> Dict[str, Any]:
        self.attempts += 1
        raise CollaboratorError(f"mailbox {to} rejected the message", kind="delivery", retryable=self.retryable)


class StubHttpClient:
    """Returns canned responses and records requests."""

    def __init__(self, response: Any = None):
        self.response = response if response is not None else {"status": 200, "headers": {}, "body": {"ok": True}}
        self.requests: List[Dict[str, Any]] = []

    async def request(self, method, url, headers=None, body=None, timeout=None):
        self.requests.append({"method": method, "url": url, "headers": headers, "body": body, "timeout": timeout})
        return self.response


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class Clock:
    """Settable clock for DELAY tests."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class Harness:
    """An engine wired to in-memory stores and stub collaborators."""

    def __init__(
        self,
        data_access: Optional[InMemoryDataAccess] = None,
        message_sender: Optional[LoggingMessageSender] = None,
        http_client: Any = None,
        clock: Any = None,
        checkpoints: Optional[CheckpointStorage] = None,
        **engine_kwargs: Any,
    ):
        self.workflows = WorkflowStorage()
        self.executions = ExecutionStorage()
        self.checkpoints = checkpoints if checkpoints is not None else CheckpointStorage()
        self.data = data_access if data_access is not None else InMemoryDataAccess({"Cart": CARTS})
        self.sender = message_sender if message_sender is not None else LoggingMessageSender()
        self.notifier = InMemoryNotificationDispatcher()
        self.http = http_client if http_client is not None else StubHttpClient()
        self.sleep = RecordingSleep()
        self.adapter = PrimitiveAdapter(
            data_access=self.data,
            http_client=self.http,
            message_sender=self.sender,
            notifier=self.notifier,
        )
        kwargs: Dict[str, Any] = {"sleep": self.sleep}
        if clock is not None:
            kwargs["clock"] = clock
        kwargs.update(engine_kwargs)
        self.engine = WorkflowEngine(self.workflows, self.executions, self.checkpoints, self.adapter, **kwargs)

    async def run(self, workflow: Workflow, trigger: Optional[WorkflowEvent] = None):
        saved = await self.workflows.save(workflow)
        return await self.engine.execute(saved, trigger or event())
