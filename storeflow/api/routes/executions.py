"""
Execution API Routes.

Read access to execution records, plus cancellation.
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
import logging

from storeflow.api.deps import get_runtime
from storeflow.api.schemas import ErrorResponse, ExecutionListResponse
from storeflow.engine.errors import ExecutionNotFoundError
from storeflow.engine.models import ExecutionStatus, WorkflowExecution
from storeflow.runtime import Runtime


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/executions", tags=["Executions"])


@router.get("", response_model=ExecutionListResponse)
async def list_executions(
    workflow_id: Optional[str] = None,
    status: Optional[ExecutionStatus] = None,
    limit: int = Query(100, ge=1, le=1000),
    runtime: Runtime = Depends(get_runtime),
) -> ExecutionListResponse:
    """List executions, newest first, optionally filtered by workflow and status."""
    if workflow_id:
        executions = await runtime.executions.list_by_workflow(workflow_id)
    else:
        executions = await runtime.executions.list_all()
    if status:
        executions = [e for e in executions if e.status == status]

    executions.sort(key=lambda e: e.created_at, reverse=True)
    return ExecutionListResponse(executions=executions[:limit], total=len(executions))


@router.get("/{execution_id}", response_model=WorkflowExecution, responses={404: {"model": ErrorResponse}})
async def get_execution(execution_id: str, runtime: Runtime = Depends(get_runtime)) -> WorkflowExecution:
    """Get an execution with its full node-result trail."""
    execution = await runtime.executions.get(execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail=f"Execution '{execution_id}' not found")
    return execution


@router.post(
    "/{execution_id}/cancel",
    response_model=WorkflowExecution,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_execution(execution_id: str, runtime: Runtime = Depends(get_runtime)) -> WorkflowExecution:
    """
    Cancel an execution.

    Pending and suspended executions are cancelled at once; a running one
    stops at its next node boundary.
    """
    try:
        existing = await runtime.executions.get(execution_id)
        if existing is not None and existing.is_finished:
            raise HTTPException(
                status_code=409,
                detail=f"Execution '{execution_id}' already finished ({existing.status.value})",
            )
        return await runtime.engine.cancel(execution_id)
    except ExecutionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
