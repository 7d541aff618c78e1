"""
React Flow conversion.

The visual editor stores graphs as React Flow nodes and edges. These
helpers translate between that shape and the executable Workflow model;
positions are presentation only and never affect execution.
"""

from typing import Any, Dict, List, Optional

from storeflow.engine.graph import WorkflowGraph
from storeflow.engine.models import Edge, Node, NodeType, Workflow


# NodeType -> React Flow node type
NODE_TYPE_MAP = {
    NodeType.TRIGGER: "trigger",
    NodeType.DATABASE: "database",
    NodeType.TRANSFORM: "transform",
    NodeType.CONDITION: "condition",
    NodeType.ACTION: "primitive",
    NodeType.NOTIFICATION: "notification",
    NodeType.HTTP: "http",
    NodeType.LOOP: "loop",
    NodeType.DELAY: "delay",
    NodeType.END: "output",
}

_REVERSE_TYPE_MAP = {v: k for k, v in NODE_TYPE_MAP.items()}

# Handles the editor uses for plain connections
_DEFAULT_HANDLES = {None, "", "output", "input"}


def auto_layout(workflow: Workflow, spacing_x: int = 200, spacing_y: int = 100) -> Dict[str, Dict[str, float]]:
    """
    Top-to-bottom layout: one row per BFS level from the trigger, nodes of
    a row centered around x=0. Unreachable nodes go on the first row.
    """
    levels = WorkflowGraph(workflow).levels()
    rows: Dict[int, List[str]] = {}
    for node in sorted(workflow.nodes, key=lambda n: (n.order, n.id)):
        rows.setdefault(levels.get(node.id, 0), []).append(node.id)

    positions = {}
    for level, node_ids in rows.items():
        start_x = -(len(node_ids) - 1) * spacing_x / 2
        for index, node_id in enumerate(node_ids):
            positions[node_id] = {"x": start_x + index * spacing_x, "y": level * spacing_y}
    return positions


def to_react_flow(workflow: Workflow, positions: Optional[Dict[str, Dict[str, float]]] = None) -> Dict[str, Any]:
    """Serialize a workflow into React Flow ``nodes``/``edges`` plus its metadata."""
    positions = positions or auto_layout(workflow)

    nodes = []
    for node in workflow.nodes:
        nodes.append({
            "id": node.id,
            "type": NODE_TYPE_MAP[node.type],
            "position": positions.get(node.id, {"x": 0, "y": 0}),
            "data": {
                "label": node.name or node.id,
                "stepType": node.type.value,
                "order": node.order,
                "config": node.config,
                "conditions": node.conditions,
                "retry": node.retry.model_dump() if node.retry else None,
            },
        })

    edges = []
    for index, edge in enumerate(workflow.edges):
        item = {
            "id": f"e{index}-{edge.source}-{edge.target}",
            "source": edge.source,
            "target": edge.target,
        }
        if edge.label:
            item["label"] = edge.label
            item["sourceHandle"] = edge.label
        if edge.condition:
            item["data"] = {"condition": edge.condition}
        edges.append(item)

    return {
        "id": workflow.id,
        "name": workflow.name,
        "slug": workflow.slug,
        "description": workflow.description,
        "trigger": workflow.trigger.model_dump(mode="json"),
        "variables": workflow.variables,
        "enabled": workflow.enabled,
        "version": workflow.version,
        "nodes": nodes,
        "edges": edges,
        "viewport": {"x": 0, "y": 0, "zoom": 1},
    }


def _node_type(item: Dict[str, Any]) -> NodeType:
    data = item.get("data") or {}
    if data.get("stepType"):
        return NodeType(data["stepType"])
    try:
        return _REVERSE_TYPE_MAP[item.get("type")]
    except KeyError:
        raise ValueError(f"Unknown node type '{item.get('type')}' on node '{item.get('id')}'")


def from_react_flow(data: Dict[str, Any]) -> Workflow:
    """
    Build a workflow from React Flow data.

    Raises:
        ValueError: A node type cannot be mapped
        pydantic.ValidationError: The resulting workflow is malformed
    """
    nodes = []
    for index, item in enumerate(data.get("nodes") or []):
        node_data = item.get("data") or {}
        nodes.append(Node(
            id=item["id"],
            name=node_data.get("label") or "",
            type=_node_type(item),
            order=node_data.get("order", index),
            config=node_data.get("config") or {},
            conditions=node_data.get("conditions"),
            retry=node_data.get("retry"),
        ))

    edges = []
    for item in data.get("edges") or []:
        label = item.get("label")
        if not label and item.get("sourceHandle") not in _DEFAULT_HANDLES:
            label = item["sourceHandle"]
        edges.append(Edge(
            source=item["source"],
            target=item["target"],
            label=label or None,
            condition=(item.get("data") or {}).get("condition"),
        ))

    fields = {
        key: data[key]
        for key in ("id", "name", "slug", "description", "trigger", "variables", "version")
        if data.get(key) is not None
    }
    fields.setdefault("name", "Untitled workflow")
    return Workflow(nodes=nodes, edges=edges, **fields)
