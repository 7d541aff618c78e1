"""
Shared route dependencies.
"""

from fastapi import Depends, HTTPException, Request

from storeflow.engine.errors import WorkflowValidationError
from storeflow.engine.models import Workflow
from storeflow.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """The Runtime built by ``create_app``."""
    return request.app.state.runtime


async def get_workflow(workflow_id: str, runtime: Runtime = Depends(get_runtime)) -> Workflow:
    workflow = await runtime.workflows.get(workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found")
    return workflow


def validation_error(e: WorkflowValidationError) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={"message": "Workflow validation failed", "errors": e.errors},
    )
