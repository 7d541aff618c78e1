"""
Workflow error taxonomy.
"""

from typing import List, Optional

from storeflow.engine.models import StepFailure


class WorkflowError(Exception):
    """Base class for workflow errors."""


class WorkflowValidationError(WorkflowError):
    """The workflow graph is malformed; raised when enabling it."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(f"Workflow validation failed: {'; '.join(self.errors)}")


class WorkflowNotFoundError(WorkflowError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow '{workflow_id}' not found")


class ExecutionNotFoundError(WorkflowError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' not found")


class StepError(WorkflowError):
    """A step failed after the engine gave up on it."""

    def __init__(self, node_id: str, failure: StepFailure, attempts: int = 1):
        self.node_id = node_id
        self.failure = failure
        self.attempts = attempts
        super().__init__(
            f"Node '{node_id}' failed after {attempts} attempt(s): "
            f"[{failure.kind}] {failure.message}"
        )


class ConditionEvaluationError(WorkflowError):
    """A condition could not be evaluated. Callers treat it as false."""


class ExpressionError(ConditionEvaluationError):
    """An expression could not be parsed or evaluated."""

    def __init__(self, message: str, expression: Optional[str] = None):
        self.expression = expression
        if expression is not None:
            message = f"{message} in expression {expression!r}"
        super().__init__(message)


class SuspensionPersistenceError(WorkflowError):
    """A DELAY checkpoint could not be written."""


class TemplateNotFoundError(WorkflowError):
    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Template '{slug}' not found")


class TriggerMismatchError(WorkflowError):
    """A workflow was started through a trigger it is not configured for."""

    def __init__(self, workflow_id: str, message: str):
        self.workflow_id = workflow_id
        super().__init__(message)
