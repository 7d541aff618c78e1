"""
Workflow Data Model.

Workflows, nodes, edges and the records produced while running them.
Everything here is a pydantic model so it can be persisted as JSON and
restored without loss.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator
from datetime import datetime, timezone
from enum import Enum
import re
import uuid


# Reserved edge labels
ON_ERROR_LABEL = "onError"
LOOP_BODY_LABEL = "body"


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def slugify(value: str) -> str:
    """Lowercase, hyphen-separated slug for a workflow name."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "workflow"


class NodeType(str, Enum):
    """Types of nodes in a workflow graph."""
    TRIGGER = "TRIGGER"
    DATABASE = "DATABASE"
    TRANSFORM = "TRANSFORM"
    CONDITION = "CONDITION"
    ACTION = "ACTION"
    NOTIFICATION = "NOTIFICATION"
    HTTP = "HTTP"
    LOOP = "LOOP"
    DELAY = "DELAY"
    END = "END"


# Node types whose work is delegated to the primitive adapter
PRIMITIVE_NODE_TYPES = frozenset({
    NodeType.DATABASE,
    NodeType.TRANSFORM,
    NodeType.ACTION,
    NodeType.NOTIFICATION,
    NodeType.HTTP,
})


class TriggerType(str, Enum):
    """How executions of a workflow are started."""
    EVENT = "EVENT"
    SCHEDULE = "SCHEDULE"
    MANUAL = "MANUAL"
    WEBHOOK = "WEBHOOK"


class ExecutionStatus(str, Enum):
    """Status of a workflow execution."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


FINISHED_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
})


class NodeStatus(str, Enum):
    """Status of a single node within an execution."""
    SCHEDULED = "SCHEDULED"
    EXECUTING = "EXECUTING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


# ============================================================
# Definitions
# ============================================================

class RetryPolicy(BaseModel):
    """Per-node override of the engine's retry defaults."""
    max_attempts: Optional[int] = Field(None, ge=1)
    base_delay: Optional[float] = Field(None, ge=0)
    max_delay: Optional[float] = Field(None, ge=0)


class Trigger(BaseModel):
    """
    Trigger definition.

    EVENT config: ``{"eventType": "order.created", "filters": {...}, "priority": 0}``
    SCHEDULE config: ``{"cron": "0 */6 * * *", "timezone": "UTC"}``
    WEBHOOK workflows are started by slug through the webhook endpoint.
    """
    type: TriggerType = TriggerType.MANUAL
    config: Dict[str, Any] = Field(default_factory=dict)


class Node(BaseModel):
    """
    A node in the workflow graph.

    Attributes:
        id: Unique identifier within the workflow
        name: Human-readable label
        type: Node type, selects how the engine dispatches it
        order: Declared order, used to break ties between ready nodes
        config: Type-specific configuration, may contain {{expressions}}
        conditions: Routing block for CONDITION nodes
        retry: Optional retry policy override
    """
    id: str
    name: str = ""
    type: NodeType
    order: int = 0
    config: Dict[str, Any] = Field(default_factory=dict)
    conditions: Optional[Dict[str, Any]] = None
    retry: Optional[RetryPolicy] = None

    @field_validator("id")
    @classmethod
    def _id_not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Node id cannot be empty")
        return value


class Edge(BaseModel):
    """
    A directed edge between two nodes.

    ``condition`` guards the edge with an expression. ``label`` names the
    branch for CONDITION routing; ``onError`` and ``body`` are reserved.
    """
    source: str
    target: str
    condition: Optional[str] = None
    label: Optional[str] = None

    @property
    def is_error_edge(self) -> bool:
        return self.label == ON_ERROR_LABEL

    @property
    def is_body_edge(self) -> bool:
        return self.label == LOOP_BODY_LABEL


class Workflow(BaseModel):
    """A named automation: trigger, node graph and variables."""
    id: str = Field(default_factory=new_id)
    name: str
    slug: str = ""
    description: str = ""
    category: Optional[str] = None
    trigger: Trigger = Field(default_factory=Trigger)
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    enabled: bool = False
    variables: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_run_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _default_slug(self) -> "Workflow":
        if not self.slug:
            self.slug = slugify(self.name)
        return self

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def trigger_nodes(self) -> List[Node]:
        return [n for n in self.nodes if n.type == NodeType.TRIGGER]


# ============================================================
# Runtime records
# ============================================================

class WorkflowEvent(BaseModel):
    """A published domain event. Ephemeral: the bus never stores it."""
    id: str = Field(default_factory=new_id)
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    source: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class StepFailure(BaseModel):
    """Normalized failure of a step, whatever collaborator produced it."""
    kind: str
    message: str
    retryable: bool = False


class NodeResult(BaseModel):
    """Outcome of one node (or one loop-body node for one iteration)."""
    node_id: str
    status: NodeStatus
    output: Any = None
    error: Optional[StepFailure] = None
    attempts: int = 0
    iteration: Optional[int] = None
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None


class WorkflowExecution(BaseModel):
    """A single run of a workflow."""
    id: str = Field(default_factory=new_id)
    workflow_id: str
    workflow_version: int = 1
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger_event: WorkflowEvent
    node_results: List[NodeResult] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    elapsed_ms: Optional[float] = None
    error: Optional[str] = None
    resume_at: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def results_for(self, node_id: str) -> List[NodeResult]:
        return [r for r in self.node_results if r.node_id == node_id]


class EventSubscription(BaseModel):
    """Binds an event-type pattern to a workflow."""
    id: str = Field(default_factory=new_id)
    workflow_id: str
    pattern: str
    priority: int = 0
    filters: Dict[str, Any] = Field(default_factory=dict)


class Checkpoint(BaseModel):
    """
    Durable continuation of a suspended execution.

    Written when a DELAY node is reached; consumed when the execution is
    resumed after ``resume_at``.
    """
    execution_id: str
    workflow_id: str
    workflow_version: int
    node_id: str
    context: Dict[str, Any]
    traversal: Dict[str, Any]
    resume_at: datetime
    created_at: datetime = Field(default_factory=utcnow)
