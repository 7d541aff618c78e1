"""
Graph Analysis for Workflow Definitions.

A WorkflowGraph wraps a Workflow definition with the indexes the engine
needs (inbound/outbound edges, loop bodies, traversal scopes) and the
structural validation run before a workflow may be enabled.

Scopes:
    The main scope holds every node that is not owned by a LOOP. Each LOOP
    owns a body: the nodes reachable from its ``body`` edges, excluding END
    nodes and anything reachable from the loop's other outgoing edges.
    Nested loops own their own bodies. Edges that cross scopes are ignored
    during traversal.
"""

from typing import Dict, List, Optional, Set
from collections import deque

from storeflow.engine.models import (
    Edge,
    Node,
    NodeType,
    TriggerType,
    Workflow,
)


class WorkflowGraph:
    """
    Indexed, read-only view of a workflow graph.

    Attributes:
        workflow: The underlying definition
        nodes: Dict of node_id -> Node
        edges: Edge list; edge states are keyed by index into it
        trigger: The TRIGGER node, if exactly one exists
        bodies: Dict of loop_id -> every node inside that loop's body
        owner: Dict of node_id -> innermost owning loop id (None for main scope)
    """

    def __init__(self, workflow: Workflow):
        self.workflow = workflow
        self.nodes: Dict[str, Node] = {}
        for node in workflow.nodes:
            self.nodes.setdefault(node.id, node)
        self.edges: List[Edge] = list(workflow.edges)

        self.outgoing: Dict[str, List[int]] = {node_id: [] for node_id in self.nodes}
        self.incoming: Dict[str, List[int]] = {node_id: [] for node_id in self.nodes}
        for index, edge in enumerate(self.edges):
            if edge.source in self.outgoing:
                self.outgoing[edge.source].append(index)
            if edge.target in self.incoming:
                self.incoming[edge.target].append(index)

        triggers = workflow.trigger_nodes
        self.trigger: Optional[Node] = triggers[0] if len(triggers) == 1 else None

        self.bodies: Dict[str, Set[str]] = {
            node_id: self._compute_body(node_id)
            for node_id, node in self.nodes.items()
            if node.type == NodeType.LOOP
        }
        self.owner: Dict[str, Optional[str]] = {
            node_id: self._innermost_loop(node_id) for node_id in self.nodes
        }

    # ============================================================
    # Edges
    # ============================================================

    def is_body_edge(self, index: int) -> bool:
        """True for a ``body`` edge leaving a LOOP node."""
        edge = self.edges[index]
        source = self.nodes.get(edge.source)
        return edge.is_body_edge and source is not None and source.type == NodeType.LOOP

    def body_entry_edges(self, loop_id: str) -> List[int]:
        return [i for i in self.outgoing.get(loop_id, []) if self.is_body_edge(i)]

    def scope_of(self, loop_id: Optional[str]) -> Set[str]:
        """Nodes traversed by the main scope (None) or by one loop's body."""
        return {node_id for node_id, owner in self.owner.items() if owner == loop_id}

    def inbound_edges(self, node_id: str, scope_root: Optional[str]) -> List[int]:
        """
        Inbound edges of a node that count within a traversal scope.

        Inside a loop body, the loop's own ``body`` edges count as inbound
        edges from an always-succeeded source.
        """
        edges = []
        for index in self.incoming.get(node_id, []):
            source = self.edges[index].source
            if source not in self.nodes:
                continue
            if self.is_body_edge(index):
                if source == scope_root:
                    edges.append(index)
            elif self.owner.get(source) == scope_root:
                edges.append(index)
        return edges

    def outbound_edges(self, node_id: str) -> List[int]:
        """Outgoing edges that stay within the node's own scope."""
        scope_root = self.owner.get(node_id)
        return [
            index for index in self.outgoing.get(node_id, [])
            if not self.is_body_edge(index)
            and self.owner.get(self.edges[index].target, "__missing__") == scope_root
        ]

    # ============================================================
    # Reachability
    # ============================================================

    def _reachable(self, starts: List[str], stop_at_end: bool = False) -> Set[str]:
        seen: Set[str] = set()
        queue = deque(starts)
        while queue:
            node_id = queue.popleft()
            if node_id in seen or node_id not in self.nodes:
                continue
            if stop_at_end and self.nodes[node_id].type == NodeType.END:
                continue
            seen.add(node_id)
            for index in self.outgoing[node_id]:
                queue.append(self.edges[index].target)
        return seen

    def _compute_body(self, loop_id: str) -> Set[str]:
        entry_targets = [self.edges[i].target for i in self.outgoing[loop_id] if self.edges[i].is_body_edge]
        exit_targets = [self.edges[i].target for i in self.outgoing[loop_id] if not self.edges[i].is_body_edge]
        body = self._reachable(entry_targets, stop_at_end=True)
        body -= self._reachable(exit_targets)
        body.discard(loop_id)
        return body

    def _innermost_loop(self, node_id: str) -> Optional[str]:
        owners = [loop_id for loop_id, body in self.bodies.items() if node_id in body]
        if not owners:
            return None
        return min(owners, key=lambda loop_id: len(self.bodies[loop_id]))

    def reachable_from_trigger(self) -> Set[str]:
        if self.trigger is None:
            return set()
        return self._reachable([self.trigger.id])

    def levels(self) -> Dict[str, int]:
        """BFS depth of each node from the trigger (unreached nodes omitted)."""
        if self.trigger is None:
            return {}
        depth = {self.trigger.id: 0}
        queue = deque([self.trigger.id])
        while queue:
            node_id = queue.popleft()
            for index in self.outgoing[node_id]:
                target = self.edges[index].target
                if target in self.nodes and target not in depth:
                    depth[target] = depth[node_id] + 1
                    queue.append(target)
        return depth

    def _find_cycle(self, scope_root: Optional[str]) -> Optional[List[str]]:
        """Kahn's algorithm over one scope; returns the nodes left on a cycle."""
        scope = self.scope_of(scope_root)
        indegree = {node_id: 0 for node_id in scope}
        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in scope}
        for index, edge in enumerate(self.edges):
            if self.is_body_edge(index):
                continue
            if edge.source in scope and edge.target in scope:
                adjacency[edge.source].append(edge.target)
                indegree[edge.target] += 1

        queue = deque(node_id for node_id, degree in indegree.items() if degree == 0)
        visited = 0
        while queue:
            node_id = queue.popleft()
            visited += 1
            for target in adjacency[node_id]:
                indegree[target] -= 1
                if indegree[target] == 0:
                    queue.append(target)

        if visited == len(scope):
            return None
        return sorted(node_id for node_id, degree in indegree.items() if degree > 0)

    # ============================================================
    # Validation
    # ============================================================

    def validate(self) -> List[str]:
        """
        Validate the graph structure.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: List[str] = []
        workflow = self.workflow

        if not workflow.nodes:
            errors.append("Workflow must have at least one node")
            return errors

        seen: Set[str] = set()
        for node in workflow.nodes:
            if node.id in seen:
                errors.append(f"Duplicate node id '{node.id}'")
            seen.add(node.id)

        trigger_count = len(workflow.trigger_nodes)
        if trigger_count != 1:
            errors.append(f"Workflow must have exactly one TRIGGER node, found {trigger_count}")

        for edge in self.edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in self.nodes:
                    errors.append(f"Edge {edge.source} -> {edge.target} references unknown node '{endpoint}'")
            if edge.source == edge.target:
                errors.append(f"Self-loop on node '{edge.source}'")

        if self.trigger is not None:
            if self.incoming[self.trigger.id]:
                errors.append(f"TRIGGER node '{self.trigger.id}' cannot have inbound edges")
            orphans = set(self.nodes) - self.reachable_from_trigger()
            if orphans:
                errors.append(f"Orphan nodes (not reachable from trigger): {sorted(orphans)}")

        for scope_root in [None] + sorted(self.bodies):
            cycle = self._find_cycle(scope_root)
            if cycle:
                where = f"loop '{scope_root}' body" if scope_root else "workflow"
                errors.append(f"Cycle detected in {where}: {cycle}")

        for loop_id, body in sorted(self.bodies.items()):
            if not body:
                errors.append(f"LOOP node '{loop_id}' has no body (add an edge labelled 'body')")
            for node_id in sorted(body):
                if self.nodes[node_id].type == NodeType.DELAY:
                    errors.append(f"DELAY node '{node_id}' is not allowed inside loop '{loop_id}'")

        errors.extend(_validate_trigger_config(workflow))
        return errors

    def __repr__(self) -> str:
        return f"WorkflowGraph(workflow='{self.workflow.name}', nodes={list(self.nodes)})"


def _validate_trigger_config(workflow: Workflow) -> List[str]:
    # Local import: the schedule registry depends on the engine models
    from storeflow.lifecycle.schedule import CronExpression

    errors = []
    trigger = workflow.trigger
    if trigger.type == TriggerType.EVENT and not trigger.config.get("eventType"):
        errors.append("EVENT trigger requires 'eventType'")
    if trigger.type == TriggerType.SCHEDULE:
        cron = trigger.config.get("cron")
        if not cron:
            errors.append("SCHEDULE trigger requires 'cron'")
        else:
            try:
                CronExpression(cron, trigger.config.get("timezone") or "UTC")
            except ValueError as e:
                errors.append(f"Invalid cron expression '{cron}': {e}")
    return errors


def validate_workflow(workflow: Workflow) -> List[str]:
    """Convenience wrapper: validation errors for a workflow definition."""
    return WorkflowGraph(workflow).validate()
