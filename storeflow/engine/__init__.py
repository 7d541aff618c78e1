"""
Engine package - Workflow model, context and graph analysis.

The interpreter lives in storeflow.engine.executor; it depends on the
adapters, which import the models from here.
"""

from storeflow.engine.models import (
    Checkpoint,
    Edge,
    EventSubscription,
    ExecutionStatus,
    Node,
    NodeResult,
    NodeStatus,
    NodeType,
    StepFailure,
    Trigger,
    TriggerType,
    Workflow,
    WorkflowEvent,
    WorkflowExecution,
)
from storeflow.engine.context import ExecutionContext, create_context
from storeflow.engine.graph import WorkflowGraph, validate_workflow

__all__ = [
    "Checkpoint",
    "Edge",
    "EventSubscription",
    "ExecutionStatus",
    "Node",
    "NodeResult",
    "NodeStatus",
    "NodeType",
    "StepFailure",
    "Trigger",
    "TriggerType",
    "Workflow",
    "WorkflowEvent",
    "WorkflowExecution",
    "ExecutionContext",
    "create_context",
    "WorkflowGraph",
    "validate_workflow",
]
