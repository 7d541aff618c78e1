"""
Execution Context for the Workflow Engine.

The context is the state that flows through one execution: the triggering
event, workflow variables, node outputs and, inside loop bodies, the
iteration locals. Node configs are resolved against it before dispatch and
CONDITION nodes evaluate their expressions against it.

Name lookup order for the head of a path:
    1. iteration locals (item, index, custom names)
    2. variables, including node output aliases
    3. node outputs by node id
    4. event payload fields

The reserved heads ``event``/``trigger``, ``nodes`` and ``variables`` always
address those maps directly.
"""

from typing import Any, Dict, List, Optional, Sequence, Union
from pydantic_core import to_jsonable_python
import json
import logging
import re

from storeflow.engine.errors import ConditionEvaluationError, ExpressionError
from storeflow.engine.expressions import PathSegment, evaluate, get_path
from storeflow.engine.models import Workflow, WorkflowEvent


logger = logging.getLogger(__name__)

_TEMPLATE_RE = re.compile(r"\{\{\s*(.+?)\s*\}\}")
_SINGLE_TEMPLATE_RE = re.compile(r"^\s*\{\{\s*((?:(?!\}\}).)+?)\s*\}\}\s*$")

_MISSING = object()


class ExecutionContext:
    """
    Execution-scoped state container.

    A child context (one loop iteration) reads through to its parent and
    writes only to itself, so sibling iterations never see each other's
    writes and the parent is never mutated.
    """

    def __init__(
        self,
        event: Optional[Dict[str, Any]] = None,
        variables: Optional[Dict[str, Any]] = None,
        node_outputs: Optional[Dict[str, Any]] = None,
        scope: Optional[Dict[str, Any]] = None,
        parent: Optional["ExecutionContext"] = None,
        execution_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ):
        self.event: Dict[str, Any] = event if event is not None else (parent.event if parent else {})
        self.variables: Dict[str, Any] = dict(variables or {})
        self.node_outputs: Dict[str, Any] = dict(node_outputs or {})
        self.locals: Dict[str, Any] = dict(scope or {})
        self.parent = parent
        self.execution_id = execution_id or (parent.execution_id if parent else None)
        self.workflow_id = workflow_id or (parent.workflow_id if parent else None)

    # ============================================================
    # Reads
    # ============================================================

    def _chain(self) -> List["ExecutionContext"]:
        chain = []
        ctx: Optional[ExecutionContext] = self
        while ctx is not None:
            chain.append(ctx)
            ctx = ctx.parent
        return chain

    def _merged(self, attr: str) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        for ctx in reversed(self._chain()):
            merged.update(getattr(ctx, attr))
        return merged

    @property
    def all_variables(self) -> Dict[str, Any]:
        return self._merged("variables")

    @property
    def all_node_outputs(self) -> Dict[str, Any]:
        return self._merged("node_outputs")

    @property
    def iteration(self) -> Optional[int]:
        """Index of the innermost loop iteration, if any."""
        for ctx in self._chain():
            if "index" in ctx.locals:
                return ctx.locals["index"]
        return None

    def get(self, name: str, default: Any = None) -> Any:
        """Resolve a top-level name using the lookup order."""
        value = self._get_name(name)
        return default if value is _MISSING else value

    def _get_name(self, name: str) -> Any:
        if name in ("event", "trigger"):
            return self.event
        if name == "nodes":
            return self.all_node_outputs
        if name in ("variables", "vars"):
            return self.all_variables

        chain = self._chain()
        for attr in ("locals", "variables", "node_outputs"):
            for ctx in chain:
                scope = getattr(ctx, attr)
                if name in scope:
                    return scope[name]
        if name in self.event:
            return self.event[name]
        return _MISSING

    def lookup(self, path: Union[str, Sequence[PathSegment]]) -> Any:
        """Resolve a dotted path (or segment list). Unresolved paths give None."""
        segments = path.split(".") if isinstance(path, str) else list(path)
        if not segments:
            return None
        head = self._get_name(str(segments[0]))
        if head is _MISSING:
            return None
        return get_path(head, segments[1:])

    # ============================================================
    # Writes
    # ============================================================

    def set_node_output(self, node_id: str, value: Any, alias: Optional[str] = None) -> None:
        """Record a node's output, optionally also exposing it under ``alias``."""
        self.node_outputs[node_id] = value
        if alias:
            self.variables[alias] = value

    def set_variable(self, name: str, value: Any) -> None:
        self.variables[name] = value

    def child(
        self,
        item: Any,
        index: int,
        item_variable: Optional[str] = None,
        index_variable: Optional[str] = None,
    ) -> "ExecutionContext":
        """Create the scope for one loop iteration."""
        scope = {"item": item, "index": index}
        if item_variable:
            scope[item_variable] = item
        if index_variable:
            scope[index_variable] = index
        return ExecutionContext(scope=scope, parent=self)

    # ============================================================
    # Resolution
    # ============================================================

    def evaluate(self, expression: str) -> Any:
        """Evaluate an expression; raises ExpressionError on failure."""
        return evaluate(_strip_braces(expression), self.lookup)

    def resolve(self, value: Any) -> Any:
        """
        Substitute ``{{ expr }}`` templates recursively through dicts and lists.

        A string that is exactly one template yields the raw value. Mixed
        text interpolates, rendering None as an empty string.
        """
        if isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(v) for v in value]
        if not isinstance(value, str) or "{{" not in value:
            return value

        single = _SINGLE_TEMPLATE_RE.match(value)
        if single:
            return self._safe_evaluate(single.group(1))
        return _TEMPLATE_RE.sub(lambda m: _render(self._safe_evaluate(m.group(1))), value)

    def _safe_evaluate(self, expression: str) -> Any:
        try:
            return self.evaluate(expression)
        except ExpressionError as e:
            logger.warning(f"Could not resolve '{{{{{expression}}}}}': {e}")
            return None

    def evaluate_condition(self, condition: Any) -> bool:
        """
        Evaluate a condition to a boolean. Failures count as False.

        Accepts an expression string (``{{ }}`` optional), a bool, or a
        structured condition dict.
        """
        try:
            return self._condition(condition)
        except ConditionEvaluationError as e:
            logger.warning(f"Condition evaluated as false: {e}")
            return False

    def _condition(self, condition: Any) -> bool:
        if condition is None:
            return True
        if isinstance(condition, bool):
            return condition
        if isinstance(condition, str):
            return bool(self.evaluate(condition))
        if isinstance(condition, dict):
            return self._structured_condition(condition)
        raise ConditionEvaluationError(f"Unsupported condition {condition!r}")

    def _structured_condition(self, condition: Dict[str, Any]) -> bool:
        if "all" in condition:
            return all(self._condition(c) for c in condition["all"] or [])
        if "any" in condition:
            return any(self._condition(c) for c in condition["any"] or [])
        if "none" in condition:
            return not any(self._condition(c) for c in condition["none"] or [])
        if "expression" in condition:
            return bool(self.evaluate(condition["expression"]))
        if "field" not in condition:
            raise ConditionEvaluationError(f"Condition has no field: {condition!r}")

        actual = self.lookup(_strip_braces(condition["field"]))
        expected = self.resolve(condition.get("value"))
        return compare_values(condition.get("operator", "eq"), actual, expected)

    # ============================================================
    # Persistence
    # ============================================================

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe snapshot of this context (parents are flattened in)."""
        locals_: Dict[str, Any] = {}
        for ctx in reversed(self._chain()):
            locals_.update(ctx.locals)
        return to_jsonable_python({
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "event": self.event,
            "variables": self.all_variables,
            "node_outputs": self.all_node_outputs,
            "locals": locals_,
        })

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "ExecutionContext":
        return cls(
            event=data.get("event") or {},
            variables=data.get("variables"),
            node_outputs=data.get("node_outputs"),
            scope=data.get("locals"),
            execution_id=data.get("execution_id"),
            workflow_id=data.get("workflow_id"),
        )

    def __repr__(self) -> str:
        return (
            f"ExecutionContext(execution_id={self.execution_id!r}, "
            f"nodes={list(self.all_node_outputs)}, locals={self.locals})"
        )


def compare_values(operator: str, actual: Any, expected: Any) -> bool:
    """Apply a named comparison operator. Ordering needs two numbers."""
    op = operator.lstrip("$")
    if op in ("eq", "equals"):
        return actual == expected
    if op in ("ne", "neq", "notEquals"):
        return actual != expected
    if op in ("gt", "gte", "lt", "lte"):
        if not _is_number(actual) or not _is_number(expected):
            return False
        return {
            "gt": actual > expected,
            "gte": actual >= expected,
            "lt": actual < expected,
            "lte": actual <= expected,
        }[op]
    if op == "contains":
        if isinstance(actual, str) and isinstance(expected, str):
            return expected in actual
        if isinstance(actual, list):
            return expected in actual
        return False
    if op == "startsWith":
        return isinstance(actual, str) and isinstance(expected, str) and actual.startswith(expected)
    if op == "endsWith":
        return isinstance(actual, str) and isinstance(expected, str) and actual.endswith(expected)
    if op == "in":
        return isinstance(expected, list) and actual in expected
    if op in ("nin", "notIn"):
        return isinstance(expected, list) and actual not in expected
    if op == "exists":
        present = actual is not None
        return present if expected else not present
    raise ConditionEvaluationError(f"Unknown operator '{operator}'")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _strip_braces(expression: str) -> str:
    expression = expression.strip()
    single = _SINGLE_TEMPLATE_RE.match(expression)
    return single.group(1) if single else expression


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(to_jsonable_python(value))
    return str(value)


# ============================================================
# Functional helpers
# ============================================================

def event_scope(event: WorkflowEvent) -> Dict[str, Any]:
    """Expose a WorkflowEvent as the ``event`` map: payload fields plus metadata."""
    scope = dict(event.payload)
    scope.update({
        "id": event.id,
        "type": event.type,
        "source": event.source,
        "timestamp": event.timestamp.isoformat(),
        "payload": event.payload,
    })
    return scope


def create_context(
    workflow: Workflow,
    trigger_event: WorkflowEvent,
    execution_id: Optional[str] = None,
) -> ExecutionContext:
    """Seed a context with the triggering event and the workflow variables."""
    return ExecutionContext(
        event=event_scope(trigger_event),
        variables=workflow.variables,
        execution_id=execution_id,
        workflow_id=workflow.id,
    )


def set_node_output(ctx: ExecutionContext, node_id: str, value: Any, alias: Optional[str] = None) -> None:
    ctx.set_node_output(node_id, value, alias)


def resolve_inputs(ctx: ExecutionContext, node_config: Any) -> Any:
    return ctx.resolve(node_config)


def evaluate_condition(ctx: ExecutionContext, expr: Any) -> bool:
    return ctx.evaluate_condition(expr)


def create_iteration_context(
    ctx: ExecutionContext,
    item: Any,
    index: int,
    item_variable: Optional[str] = None,
    index_variable: Optional[str] = None,
) -> ExecutionContext:
    return ctx.child(item, index, item_variable, index_variable)
