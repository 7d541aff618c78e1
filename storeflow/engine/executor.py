"""
Async Workflow Engine.

The engine interprets a workflow graph for one execution at a time:
traversal via a ready queue, CONDITION routing, LOOP bodies, DELAY
suspension, retries and completion semantics. Every external effect goes
through the PrimitiveAdapter; every record goes through storage.

Traversal:
    A node becomes ready once all of its inbound edges are resolved and
    at least one is active. If they all resolve inactive the node is
    SKIPPED and the skip propagates downstream. Ready nodes run one at a
    time in ascending (order, node id).
"""

from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from datetime import datetime, timedelta
import asyncio
import heapq
import logging

from storeflow.adapters.primitive import PrimitiveAdapter
from storeflow.engine.context import ExecutionContext, create_context
from storeflow.engine.errors import (
    ExecutionNotFoundError,
    ExpressionError,
    StepError,
    SuspensionPersistenceError,
)
from storeflow.engine.graph import WorkflowGraph
from storeflow.engine.models import (
    PRIMITIVE_NODE_TYPES,
    Checkpoint,
    ExecutionStatus,
    Node,
    NodeResult,
    NodeStatus,
    NodeType,
    StepFailure,
    Workflow,
    WorkflowEvent,
    WorkflowExecution,
    utcnow,
)
from storeflow.storage.memory import CheckpointStorage, ExecutionStorage, WorkflowStorage


logger = logging.getLogger(__name__)

_DELAY_UNITS = {
    "ms": 0.001,
    "milliseconds": 0.001,
    "s": 1,
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
}


def output_alias(node: Node) -> Optional[str]:
    """
    Top-level name a node's output is exposed under, besides ``nodes.<id>``.

    ``config.output`` wins; DATABASE nodes default to the lower-camel model
    name, pluralized for findMany.
    """
    alias = node.config.get("output")
    if isinstance(alias, str) and alias:
        return alias
    model = node.config.get("model")
    if node.type == NodeType.DATABASE and isinstance(model, str) and model:
        alias = model[0].lower() + model[1:]
        if node.config.get("operation") == "findMany":
            alias += "s"
        return alias
    return None


# ============================================================
# Traversal state
# ============================================================

class Traversal:
    """
    Ready-queue state for one scope: the main graph, or one loop iteration.

    Edge states are keyed by the edge's index in the workflow edge list;
    an edge missing from ``edge_state`` is still unresolved.
    """

    def __init__(self, graph: WorkflowGraph, scope_root: Optional[str] = None):
        self.graph = graph
        self.scope_root = scope_root
        self.node_status: Dict[str, NodeStatus] = {}
        self.edge_state: Dict[int, bool] = {}
        self.ready: List[Tuple[int, str]] = []
        self.failed = False
        self.ended = False

    def push(self, node_id: str) -> None:
        self.node_status[node_id] = NodeStatus.SCHEDULED
        heapq.heappush(self.ready, (self.graph.nodes[node_id].order, node_id))

    def pop(self) -> str:
        _, node_id = heapq.heappop(self.ready)
        self.node_status[node_id] = NodeStatus.EXECUTING
        return node_id

    def seed_body(self, ctx: ExecutionContext) -> List[str]:
        """Activate the loop's body edges; returns nodes skipped as a result."""
        skipped: List[str] = []
        for index in self.graph.body_entry_edges(self.scope_root):
            edge = self.graph.edges[index]
            self.edge_state[index] = edge.condition is None or ctx.evaluate_condition(edge.condition)
            self._check_ready(edge.target, ctx, skipped)
        return skipped

    def complete(
        self,
        node: Node,
        status: NodeStatus,
        ctx: ExecutionContext,
        selected: Optional[List[str]] = None,
        branch_targets: Optional[Set[str]] = None,
    ) -> List[str]:
        """
        Record a node's final status and resolve its outgoing edges.

        Args:
            selected: Labels (or target ids) chosen by a CONDITION node
            branch_targets: Target ids named by the CONDITION's branches

        Returns:
            Ids of downstream nodes that became SKIPPED
        """
        self.node_status[node.id] = status
        skipped: List[str] = []
        self._resolve_outgoing(node, status, ctx, selected, branch_targets or set(), skipped)
        return skipped

    def _resolve_outgoing(
        self,
        node: Node,
        status: NodeStatus,
        ctx: ExecutionContext,
        selected: Optional[List[str]],
        branch_targets: Set[str],
        skipped: List[str],
    ) -> None:
        for index in self.graph.outbound_edges(node.id):
            edge = self.graph.edges[index]
            if status == NodeStatus.SUCCEEDED:
                active = not edge.is_error_edge
                if active and selected is not None and (edge.label or edge.target in branch_targets):
                    active = edge.label in selected or edge.target in selected
            elif status == NodeStatus.FAILED:
                active = edge.is_error_edge
            else:
                active = False

            if active and edge.condition:
                active = ctx.evaluate_condition(edge.condition)
            self.edge_state[index] = active
            self._check_ready(edge.target, ctx, skipped)

    def _check_ready(self, node_id: str, ctx: ExecutionContext, skipped: List[str]) -> None:
        if node_id in self.node_status:
            return
        inbound = self.graph.inbound_edges(node_id, self.scope_root)
        if any(index not in self.edge_state for index in inbound):
            return
        if any(self.edge_state[index] for index in inbound):
            self.push(node_id)
            return

        node = self.graph.nodes[node_id]
        self.node_status[node_id] = NodeStatus.SKIPPED
        skipped.append(node_id)
        self._resolve_outgoing(node, NodeStatus.SKIPPED, ctx, None, set(), skipped)

    def has_error_edge(self, node_id: str) -> bool:
        return any(self.graph.edges[i].is_error_edge for i in self.graph.outbound_edges(node_id))

    def snapshot(self) -> Dict[str, Any]:
        return {
            "scope_root": self.scope_root,
            "node_status": {k: v.value for k, v in self.node_status.items()},
            "edge_state": {str(k): v for k, v in self.edge_state.items()},
            "ready": [[order, node_id] for order, node_id in self.ready],
            "failed": self.failed,
        }

    @classmethod
    def from_snapshot(cls, graph: WorkflowGraph, data: Dict[str, Any]) -> "Traversal":
        traversal = cls(graph, data.get("scope_root"))
        traversal.node_status = {k: NodeStatus(v) for k, v in data.get("node_status", {}).items()}
        traversal.edge_state = {int(k): bool(v) for k, v in data.get("edge_state", {}).items()}
        traversal.ready = [(int(order), node_id) for order, node_id in data.get("ready", [])]
        heapq.heapify(traversal.ready)
        traversal.failed = bool(data.get("failed"))
        return traversal


def _case_matches(expected: Any, value: Any) -> bool:
    if expected == value:
        return True
    # Keys of a cases object are always strings; "2" still selects the number 2
    if isinstance(expected, str) and isinstance(value, (int, float)) and not isinstance(value, bool):
        return expected == str(value)
    return False


class _Suspended(Exception):
    """Internal signal: the execution was suspended at a DELAY node."""


class _Cancelled(Exception):
    """Internal signal: cancellation observed at a node boundary."""


# ============================================================
# Engine
# ============================================================

class WorkflowEngine:
    """
    Graph interpreter for workflow executions.

    Usage:
        engine = WorkflowEngine(workflows, executions, checkpoints, adapter)
        execution = await engine.execute(workflow, event)
    """

    def __init__(
        self,
        workflows: WorkflowStorage,
        executions: ExecutionStorage,
        checkpoints: CheckpointStorage,
        adapter: PrimitiveAdapter,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        loop_max_concurrency: int = 10,
        loop_max_items: int = 1000,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the engine.

        Args:
            max_attempts: Default attempt ceiling for retryable failures
            base_delay: Backoff base in seconds
            max_delay: Backoff cap in seconds
            sleep: Awaitable sleep used between retries (injectable for tests)
            clock: Source of "now" for DELAY resume times
        """
        self.workflows = workflows
        self.executions = executions
        self.checkpoints = checkpoints
        self.adapter = adapter
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.loop_max_concurrency = loop_max_concurrency
        self.loop_max_items = loop_max_items
        self._sleep = sleep
        self._clock = clock
        self._cancelled: Set[str] = set()

    # ============================================================
    # Public operations
    # ============================================================

    async def schedule(self, workflow: Workflow, event: WorkflowEvent) -> WorkflowExecution:
        """Persist a PENDING execution of ``workflow`` for ``event``."""
        execution = WorkflowExecution(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            trigger_event=event,
        )
        await self.executions.create(execution)
        logger.info(f"Scheduled execution {execution.id} of '{workflow.name}' v{workflow.version} ({event.type})")
        return execution

    async def start(self, execution_id: str) -> WorkflowExecution:
        """
        Run a scheduled execution to completion or suspension.

        Executions that are no longer PENDING are returned unchanged.
        """
        execution = await self.executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        if execution.status != ExecutionStatus.PENDING:
            return execution

        workflow = await self.workflows.get(execution.workflow_id, execution.workflow_version)
        if workflow is None:
            return await self._abort(execution, None, f"Workflow '{execution.workflow_id}' v{execution.workflow_version} not found")

        graph = WorkflowGraph(workflow)
        errors = graph.validate()
        if errors:
            return await self._abort(execution, graph, f"Graph validation failed: {'; '.join(errors)}")

        execution.status = ExecutionStatus.RUNNING
        execution.started_at = utcnow()
        await self.executions.save(execution)
        logger.info(f"Starting execution {execution.id} of '{workflow.name}'")

        ctx = create_context(workflow, execution.trigger_event, execution.id)
        traversal = Traversal(graph)

        trigger = graph.trigger
        event_data = ctx.event
        await self._record(execution, NodeResult(
            node_id=trigger.id,
            status=NodeStatus.SUCCEEDED,
            output=event_data,
            attempts=1,
            ended_at=utcnow(),
        ))
        ctx.set_node_output(trigger.id, event_data)
        await self._record_skipped(execution, traversal.complete(trigger, NodeStatus.SUCCEEDED, ctx))

        return await self._drive(execution, graph, ctx, traversal)

    async def execute(self, workflow: Workflow, event: WorkflowEvent) -> WorkflowExecution:
        """Schedule and start an execution in one call."""
        execution = await self.schedule(workflow, event)
        return await self.start(execution.id)

    async def resume(self, checkpoint: Checkpoint) -> Optional[WorkflowExecution]:
        """Continue a suspended execution past its DELAY node."""
        await self.checkpoints.delete(checkpoint.execution_id)

        execution = await self.executions.get(checkpoint.execution_id)
        if execution is None:
            logger.warning(f"Dropping checkpoint for unknown execution {checkpoint.execution_id}")
            return None
        if execution.is_finished:
            return execution

        workflow = await self.workflows.get(checkpoint.workflow_id, checkpoint.workflow_version)
        if workflow is None:
            return await self._abort(execution, None, f"Workflow '{checkpoint.workflow_id}' v{checkpoint.workflow_version} not found")

        graph = WorkflowGraph(workflow)
        ctx = ExecutionContext.from_snapshot(checkpoint.context)
        traversal = Traversal.from_snapshot(graph, checkpoint.traversal)
        delay_node = graph.nodes[checkpoint.node_id]

        logger.info(f"Resuming execution {execution.id} after DELAY '{delay_node.id}'")
        output = {"resumeAt": checkpoint.resume_at.isoformat(), "resumedAt": utcnow().isoformat()}
        ctx.set_node_output(delay_node.id, output, output_alias(delay_node))
        await self._record(execution, NodeResult(
            node_id=delay_node.id,
            status=NodeStatus.SUCCEEDED,
            output=output,
            attempts=1,
            started_at=checkpoint.created_at,
            ended_at=utcnow(),
        ))
        execution.resume_at = None
        await self.executions.save(execution)
        await self._record_skipped(execution, traversal.complete(delay_node, NodeStatus.SUCCEEDED, ctx))

        return await self._drive(execution, graph, ctx, traversal)

    async def resume_due(self, now: Optional[datetime] = None) -> List[WorkflowExecution]:
        """Resume every checkpoint whose resume time has passed."""
        resumed = []
        for checkpoint in await self.checkpoints.list_due(now or self._clock()):
            execution = await self.resume(checkpoint)
            if execution is not None:
                resumed.append(execution)
        return resumed

    async def recover(self) -> Dict[str, int]:
        """
        Startup sweep.

        Marks RUNNING executions without a checkpoint as FAILED (they were
        interrupted mid-traversal), resumes overdue checkpoints and starts
        executions left PENDING.
        """
        failed = 0
        for execution in await self.executions.list_by_status(ExecutionStatus.RUNNING):
            if await self.checkpoints.get(execution.id) is not None:
                continue
            workflow = await self.workflows.get(execution.workflow_id, execution.workflow_version)
            await self._abort(
                execution,
                WorkflowGraph(workflow) if workflow else None,
                "Execution interrupted by process restart",
            )
            failed += 1

        resumed = len(await self.resume_due())

        restarted = 0
        for execution in await self.executions.list_by_status(ExecutionStatus.PENDING):
            await self.start(execution.id)
            restarted += 1

        logger.info(f"Recovery: {resumed} resumed, {restarted} restarted, {failed} marked failed")
        return {"resumed": resumed, "restarted": restarted, "failed": failed}

    async def cancel(self, execution_id: str) -> WorkflowExecution:
        """
        Cancel an execution.

        PENDING and suspended executions are cancelled immediately; a
        running traversal stops at the next node boundary.
        """
        execution = await self.executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        if execution.is_finished:
            return execution

        suspended = await self.checkpoints.delete(execution_id)
        if execution.status == ExecutionStatus.PENDING or suspended:
            workflow = await self.workflows.get(execution.workflow_id, execution.workflow_version)
            return await self._finalize(
                execution,
                WorkflowGraph(workflow) if workflow else None,
                ExecutionStatus.CANCELLED,
                "Cancelled",
            )

        self._cancelled.add(execution_id)
        logger.info(f"Cancellation requested for execution {execution_id}")
        return execution

    # ============================================================
    # Traversal
    # ============================================================

    async def _drive(
        self,
        execution: WorkflowExecution,
        graph: WorkflowGraph,
        ctx: ExecutionContext,
        traversal: Traversal,
    ) -> WorkflowExecution:
        try:
            await self._traverse(execution, graph, ctx, traversal)
        except _Suspended:
            return execution
        except _Cancelled:
            logger.info(f"Execution {execution.id} cancelled")
            return await self._finalize(execution, graph, ExecutionStatus.CANCELLED, "Cancelled")
        except SuspensionPersistenceError as e:
            logger.error(f"Execution {execution.id} failed: {e}")
            return await self._finalize(execution, graph, ExecutionStatus.FAILED, str(e))
        except Exception as e:
            logger.exception(f"Execution {execution.id} crashed: {e}")
            return await self._finalize(execution, graph, ExecutionStatus.FAILED, f"{type(e).__name__}: {e}")

        status = ExecutionStatus.FAILED if traversal.failed else ExecutionStatus.COMPLETED
        return await self._finalize(execution, graph, status, execution.error)

    async def _traverse(
        self,
        execution: WorkflowExecution,
        graph: WorkflowGraph,
        ctx: ExecutionContext,
        traversal: Traversal,
    ) -> None:
        while traversal.ready:
            self._check_cancelled(execution.id)
            node = graph.nodes[traversal.pop()]

            if node.type == NodeType.DELAY:
                result, routing = await self._suspend(execution, node, ctx, traversal), (None, None)
            else:
                result, routing = await self._run_node(execution, graph, node, ctx)
            await self._record(execution, result)

            if result.status == NodeStatus.FAILED and not traversal.has_error_edge(node.id):
                traversal.node_status[node.id] = NodeStatus.FAILED
                traversal.failed = True
                execution.error = str(StepError(node.id, result.error, result.attempts))
                logger.error(f"Execution {execution.id}: {execution.error}")
                return

            if node.type == NodeType.END:
                traversal.node_status[node.id] = result.status
                traversal.ended = True
                logger.info(f"Execution {execution.id} reached END '{node.id}'")
                return

            skipped = traversal.complete(node, result.status, ctx, *routing)
            await self._record_skipped(execution, skipped)

    def _check_cancelled(self, execution_id: str) -> None:
        if execution_id in self._cancelled:
            raise _Cancelled()

    async def _run_node(
        self,
        execution: WorkflowExecution,
        graph: WorkflowGraph,
        node: Node,
        ctx: ExecutionContext,
    ) -> Tuple[NodeResult, Tuple[Optional[List[str]], Optional[Set[str]]]]:
        """Execute one node; returns its result and CONDITION routing, if any."""
        started_at = utcnow()
        routing: Tuple[Optional[List[str]], Optional[Set[str]]] = (None, None)
        logger.debug(f"Executing node: {node.id} ({node.type.value})")

        if node.type == NodeType.CONDITION:
            selected, targets = self._route(node, ctx)
            result = NodeResult(node_id=node.id, status=NodeStatus.SUCCEEDED, output={"selected": selected}, attempts=1)
            routing = (selected, targets)
        elif node.type == NodeType.LOOP:
            result = await self._run_loop(execution, graph, node, ctx)
        elif node.type == NodeType.END:
            output = ctx.resolve(node.config)
            if output.get("logMessage"):
                logger.info(f"Workflow END '{node.id}': {output['logMessage']}")
            result = NodeResult(node_id=node.id, status=NodeStatus.SUCCEEDED, output=output, attempts=1)
        elif node.type in PRIMITIVE_NODE_TYPES:
            result = await self._run_primitive(node, ctx)
        else:
            result = NodeResult(
                node_id=node.id,
                status=NodeStatus.FAILED,
                error=StepFailure(kind="validation", message=f"Node type {node.type.value} cannot run here"),
            )

        result.started_at = started_at
        result.ended_at = utcnow()
        result.iteration = ctx.iteration
        if result.status == NodeStatus.SUCCEEDED:
            ctx.set_node_output(node.id, result.output, output_alias(node))
        else:
            ctx.set_node_output(node.id, {"error": result.error.model_dump() if result.error else None})
        return result, routing

    async def _run_primitive(self, node: Node, ctx: ExecutionContext) -> NodeResult:
        """Run a primitive step, retrying retryable failures with backoff."""
        policy = node.retry
        max_attempts = (policy and policy.max_attempts) or self.max_attempts
        base_delay = policy.base_delay if policy and policy.base_delay is not None else self.base_delay
        max_delay = policy.max_delay if policy and policy.max_delay is not None else self.max_delay

        attempt = 0
        while True:
            attempt += 1
            outcome = await self.adapter.execute(node.type, node.config, ctx)
            if outcome.ok:
                return NodeResult(node_id=node.id, status=NodeStatus.SUCCEEDED, output=outcome.output, attempts=attempt)

            failure = outcome.error
            if not failure.retryable or attempt >= max_attempts:
                logger.warning(f"Node '{node.id}' failed after {attempt} attempt(s): [{failure.kind}] {failure.message}")
                return NodeResult(node_id=node.id, status=NodeStatus.FAILED, error=failure, attempts=attempt)

            delay = min(base_delay * 2 ** (attempt - 1), max_delay)
            logger.warning(
                f"Node '{node.id}' attempt {attempt}/{max_attempts} failed "
                f"([{failure.kind}] {failure.message}); retrying in {delay:.2f}s"
            )
            await self._sleep(delay)

    # ============================================================
    # CONDITION
    # ============================================================

    def _route(self, node: Node, ctx: ExecutionContext) -> Tuple[List[str], Set[str]]:
        """
        Pick the branch labels of a CONDITION node.

        Supported blocks:
            {"if": expr, "then": label, "else": label}
            {"branches": [{"if": expr, "then": label}, ...], "else": label}
            {"switch": expr, "cases": {value: label} | [{"value", "then"}], "default": label}

        Returns:
            (selected labels, every label named by the block)
        """
        block = node.conditions or node.config.get("conditions") or node.config

        if "switch" in block:
            try:
                value = ctx.evaluate(block["switch"])
            except ExpressionError as e:
                logger.warning(f"Switch on node '{node.id}' evaluated as undefined: {e}")
                value = None
            cases = block.get("cases") or {}
            if isinstance(cases, dict):
                cases = [{"value": k, "then": v} for k, v in cases.items()]
            named = {c["then"] for c in cases} | ({block["default"]} if block.get("default") else set())
            for case in cases:
                if _case_matches(case["value"], value):
                    return [case["then"]], named
            return ([block["default"]] if block.get("default") else []), named

        if "branches" in block:
            branches = block["branches"] or []
            named = {b["then"] for b in branches} | ({block["else"]} if block.get("else") else set())
            selected = [b["then"] for b in branches if ctx.evaluate_condition(b.get("if"))]
            if not selected and block.get("else"):
                selected = [block["else"]]
            return selected, named

        expression = block.get("if", block.get("condition"))
        then_label = block.get("then", "true")
        else_label = block.get("else", "false")
        chosen = then_label if ctx.evaluate_condition(expression) else else_label
        return [chosen], {then_label, else_label}

    # ============================================================
    # LOOP
    # ============================================================

    async def _run_loop(
        self,
        execution: WorkflowExecution,
        graph: WorkflowGraph,
        node: Node,
        ctx: ExecutionContext,
    ) -> NodeResult:
        config = node.config
        raw_items = config.get("items")
        if isinstance(raw_items, str) and "{{" not in raw_items:
            items = ctx.lookup(raw_items)
        else:
            items = ctx.resolve(raw_items)
        if items is None:
            items = []

        def failed(message: str) -> NodeResult:
            return NodeResult(node_id=node.id, status=NodeStatus.FAILED, attempts=1,
                              error=StepFailure(kind="validation", message=message))

        if not isinstance(items, list):
            return failed(f"Loop items must be a list, got {type(items).__name__}")
        if len(items) > self.loop_max_items:
            return failed(f"Loop has {len(items)} items, limit is {self.loop_max_items}")

        concurrency = max(1, min(int(config.get("concurrency") or 1), self.loop_max_concurrency))
        stop_on_error = bool(config.get("stopOnError"))
        stop = asyncio.Event()
        iterations: List[Optional[Dict[str, Any]]] = [None] * len(items)

        async def run_iteration(index: int, item: Any) -> None:
            if stop.is_set():
                return
            child = ctx.child(item, index, config.get("itemVariable"), config.get("indexVariable"))
            iterations[index] = await self._run_iteration(execution, graph, node, child, index)
            if iterations[index]["status"] == NodeStatus.FAILED.value and stop_on_error:
                stop.set()

        if concurrency == 1:
            for index, item in enumerate(items):
                await run_iteration(index, item)
        else:
            semaphore = asyncio.Semaphore(concurrency)

            async def bounded(index: int, item: Any) -> None:
                async with semaphore:
                    await run_iteration(index, item)

            await asyncio.gather(*(bounded(i, item) for i, item in enumerate(items)))

        done = [it for it in iterations if it is not None]
        errors = [{"index": it["index"], "error": it["error"]} for it in done if it["error"]]
        output = {
            "count": len(items),
            "completed": len(done),
            "succeeded": len(done) - len(errors),
            "errors": errors,
            "iterations": done,
        }
        if errors and stop_on_error:
            first = errors[0]
            return NodeResult(
                node_id=node.id,
                status=NodeStatus.FAILED,
                output=output,
                attempts=1,
                error=StepFailure(kind="loop", message=f"Iteration {first['index']} failed: {first['error']}"),
            )
        return NodeResult(node_id=node.id, status=NodeStatus.SUCCEEDED, output=output, attempts=1)

    async def _run_iteration(
        self,
        execution: WorkflowExecution,
        graph: WorkflowGraph,
        loop: Node,
        ctx: ExecutionContext,
        index: int,
    ) -> Dict[str, Any]:
        """Traverse the loop body once in its own scope."""
        traversal = Traversal(graph, scope_root=loop.id)
        await self._record_skipped(execution, traversal.seed_body(ctx), index)
        error = None

        while traversal.ready:
            self._check_cancelled(execution.id)
            node = graph.nodes[traversal.pop()]
            result, routing = await self._run_node(execution, graph, node, ctx)
            await self._record(execution, result)

            if result.status == NodeStatus.FAILED and not traversal.has_error_edge(node.id):
                traversal.node_status[node.id] = NodeStatus.FAILED
                traversal.failed = True
                error = str(StepError(node.id, result.error, result.attempts))
                break
            skipped = traversal.complete(node, result.status, ctx, *routing)
            await self._record_skipped(execution, skipped, index)

        return {
            "index": index,
            "status": (NodeStatus.FAILED if traversal.failed else NodeStatus.SUCCEEDED).value,
            "outputs": dict(ctx.node_outputs),
            "error": error,
        }

    # ============================================================
    # DELAY
    # ============================================================

    def _resume_time(self, node: Node, ctx: ExecutionContext) -> datetime:
        config = ctx.resolve(node.config)
        now = self._clock()
        until = config.get("until")
        if until:
            when = until if isinstance(until, datetime) else datetime.fromisoformat(str(until).replace("Z", "+00:00"))
            return when if when.tzinfo else when.replace(tzinfo=now.tzinfo)
        unit = config.get("unit", "seconds")
        if unit not in _DELAY_UNITS:
            raise ValueError(f"Unknown delay unit '{unit}'")
        return now + timedelta(seconds=float(config.get("duration", 0)) * _DELAY_UNITS[unit])

    async def _suspend(
        self,
        execution: WorkflowExecution,
        node: Node,
        ctx: ExecutionContext,
        traversal: Traversal,
    ) -> NodeResult:
        """
        Write a checkpoint for ``node`` and stop the traversal.

        Only returns (with a FAILED result) when the delay config is
        unusable; otherwise raises _Suspended once the checkpoint is durable.

        Raises:
            SuspensionPersistenceError: If the checkpoint cannot be written
        """
        try:
            resume_at = self._resume_time(node, ctx)
        except (TypeError, ValueError) as e:
            failure = StepFailure(kind="validation", message=f"Invalid DELAY config: {e}")
            ctx.set_node_output(node.id, {"error": failure.model_dump()})
            return NodeResult(node_id=node.id, status=NodeStatus.FAILED, error=failure, attempts=1, ended_at=utcnow())

        try:
            checkpoint = Checkpoint(
                execution_id=execution.id,
                workflow_id=execution.workflow_id,
                workflow_version=execution.workflow_version,
                node_id=node.id,
                context=ctx.snapshot(),
                traversal=traversal.snapshot(),
                resume_at=resume_at,
            )
            await self.checkpoints.save(checkpoint)
        except Exception as e:
            failure = StepFailure(kind="persistence", message=f"Could not persist checkpoint at DELAY '{node.id}': {e}")
            await self._record(execution, NodeResult(
                node_id=node.id,
                status=NodeStatus.FAILED,
                error=failure,
                attempts=1,
                ended_at=utcnow(),
            ))
            raise SuspensionPersistenceError(failure.message) from e

        execution.resume_at = resume_at
        await self.executions.save(execution)
        logger.info(f"Execution {execution.id} suspended at DELAY '{node.id}' until {resume_at.isoformat()}")
        raise _Suspended()

    # ============================================================
    # Records
    # ============================================================

    async def _record(self, execution: WorkflowExecution, result: NodeResult) -> None:
        execution.node_results.append(result)
        await self.executions.append_result(execution.id, result)

    async def _record_skipped(
        self,
        execution: WorkflowExecution,
        node_ids: List[str],
        iteration: Optional[int] = None,
    ) -> None:
        for node_id in node_ids:
            now = utcnow()
            await self._record(execution, NodeResult(
                node_id=node_id,
                status=NodeStatus.SKIPPED,
                iteration=iteration,
                started_at=now,
                ended_at=now,
            ))

    async def _abort(
        self,
        execution: WorkflowExecution,
        graph: Optional[WorkflowGraph],
        error: str,
    ) -> WorkflowExecution:
        logger.error(f"Execution {execution.id} failed: {error}")
        return await self._finalize(execution, graph, ExecutionStatus.FAILED, error)

    async def _finalize(
        self,
        execution: WorkflowExecution,
        graph: Optional[WorkflowGraph],
        status: ExecutionStatus,
        error: Optional[str] = None,
    ) -> WorkflowExecution:
        """Close the execution; every node without a result is recorded SKIPPED."""
        if graph is not None:
            seen = {r.node_id for r in execution.node_results}
            now = utcnow()
            for node in graph.workflow.nodes:
                if node.id not in seen:
                    seen.add(node.id)
                    execution.node_results.append(NodeResult(
                        node_id=node.id,
                        status=NodeStatus.SKIPPED,
                        started_at=now,
                        ended_at=now,
                    ))

        execution.status = status
        execution.error = error if status != ExecutionStatus.COMPLETED else None
        execution.resume_at = None
        execution.ended_at = utcnow()
        started = execution.started_at or execution.created_at
        execution.elapsed_ms = (execution.ended_at - started).total_seconds() * 1000
        await self.executions.save(execution)
        self._cancelled.discard(execution.id)
        if execution.started_at is not None:
            await self.workflows.mark_run(execution.workflow_id, execution.ended_at)

        logger.info(f"Execution {execution.id} {status.value} in {execution.elapsed_ms:.1f}ms")
        return execution
