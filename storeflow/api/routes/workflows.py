"""
Workflow API Routes.

Endpoints for authoring workflows, enabling/disabling them (one by one or
in bulk) and running them manually or through a webhook.
"""

from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import ValidationError
import logging

from storeflow.api.deps import get_runtime, get_workflow, validation_error
from storeflow.api.schemas import (
    BulkToggleRequest,
    ErrorResponse,
    ValidationReport,
    WorkflowCreateRequest,
    WorkflowListResponse,
    WorkflowRunRequest,
    WorkflowStatusResponse,
    WorkflowUpdateRequest,
)
from storeflow.engine.errors import TriggerMismatchError, WorkflowNotFoundError, WorkflowValidationError
from storeflow.engine.models import TriggerType, Workflow, WorkflowEvent, WorkflowExecution, slugify
from storeflow.lifecycle.toggle import BulkToggleResult
from storeflow.runtime import Runtime
from storeflow.templates.install import unique_slug
from storeflow.templates.react_flow import from_react_flow, to_react_flow


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["Workflows"])


# ============================================================
# CRUD
# ============================================================

@router.post(
    "",
    response_model=Workflow,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse, "description": "Slug already in use"}},
)
async def create_workflow(
    request: WorkflowCreateRequest,
    runtime: Runtime = Depends(get_runtime),
) -> Workflow:
    """
    Create a workflow. It starts disabled; enable it to register its trigger.

    The graph is not validated here so drafts can be saved; use
    `GET /workflows/{id}/validate` or enable it to check it.
    """
    if request.slug:
        if await runtime.workflows.get_by_slug(request.slug) is not None:
            raise HTTPException(status_code=409, detail=f"Slug '{request.slug}' is already in use")
        slug = request.slug
    else:
        slug = await unique_slug(runtime.workflows, slugify(request.name))

    workflow = Workflow(
        name=request.name,
        slug=slug,
        description=request.description,
        category=request.category,
        trigger=request.trigger,
        nodes=request.nodes,
        edges=request.edges,
        variables=request.variables,
    )
    saved = await runtime.workflows.save(workflow)
    logger.info(f"Created workflow: {saved.id} ({saved.name})")
    return saved


@router.get("", response_model=WorkflowListResponse)
async def list_workflows(
    enabled: Optional[bool] = None,
    runtime: Runtime = Depends(get_runtime),
) -> WorkflowListResponse:
    """List workflows (latest version of each)."""
    workflows = [
        w for w in await runtime.workflows.list_all()
        if enabled is None or w.enabled == enabled
    ]
    return WorkflowListResponse(workflows=workflows, total=len(workflows))


@router.post(
    "/flow",
    response_model=Workflow,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
)
async def import_flow(data: Dict[str, Any], runtime: Runtime = Depends(get_runtime)) -> Workflow:
    """Create a disabled workflow from a React Flow graph."""
    try:
        workflow = from_react_flow(data)
    except (ValueError, KeyError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid flow data: {e}")

    workflow.enabled = False
    workflow.version = 1
    if await runtime.workflows.exists(workflow.id):
        raise HTTPException(status_code=409, detail=f"Workflow '{workflow.id}' already exists")
    workflow.slug = await unique_slug(runtime.workflows, workflow.slug)
    return await runtime.workflows.save(workflow)


# ============================================================
# Bulk lifecycle, status overview and webhooks
# ============================================================

@router.post("/bulk/enable", response_model=BulkToggleResult)
async def enable_workflows(request: BulkToggleRequest, runtime: Runtime = Depends(get_runtime)) -> BulkToggleResult:
    """Enable several workflows; failures are reported per workflow."""
    return await runtime.toggle.enable_many(request.workflow_ids)


@router.post("/bulk/disable", response_model=BulkToggleResult)
async def disable_workflows(request: BulkToggleRequest, runtime: Runtime = Depends(get_runtime)) -> BulkToggleResult:
    return await runtime.toggle.disable_many(request.workflow_ids)


@router.post("/category/{category}/enable", response_model=BulkToggleResult)
async def enable_category(category: str, runtime: Runtime = Depends(get_runtime)) -> BulkToggleResult:
    """Enable every workflow of a category (case-insensitive)."""
    return await runtime.toggle.enable_by_category(category)


@router.post(
    "/trigger/{trigger_type}/disable",
    response_model=BulkToggleResult,
    responses={400: {"model": ErrorResponse}},
)
async def disable_trigger_type(trigger_type: str, runtime: Runtime = Depends(get_runtime)) -> BulkToggleResult:
    """Disable every enabled workflow with the given trigger type."""
    try:
        kind = TriggerType(trigger_type.upper())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown trigger type '{trigger_type}'")
    return await runtime.toggle.disable_by_trigger(kind)


@router.get("/statuses", response_model=List[WorkflowStatusResponse])
async def workflow_statuses(runtime: Runtime = Depends(get_runtime)) -> List[WorkflowStatusResponse]:
    """Status of every workflow, enabled first."""
    return [WorkflowStatusResponse(**s) for s in await runtime.toggle.all_statuses()]


@router.get("/counts")
async def enabled_counts(runtime: Runtime = Depends(get_runtime)) -> Dict[str, int]:
    """Number of enabled workflows per trigger type."""
    return await runtime.toggle.enabled_counts()


@router.post(
    "/webhook/{slug}",
    response_model=WorkflowExecution,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def trigger_webhook(
    slug: str,
    payload: Optional[Dict[str, Any]] = Body(None),
    runtime: Runtime = Depends(get_runtime),
) -> WorkflowExecution:
    """
    Run an enabled WEBHOOK workflow by slug and wait for it.

    The request body becomes the trigger event payload.
    """
    try:
        return await runtime.toggle.trigger_webhook(slug, payload)
    except WorkflowNotFoundError:
        raise HTTPException(status_code=404, detail=f"No workflow with slug '{slug}'")
    except TriggerMismatchError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/{workflow_id}", response_model=Workflow, responses={404: {"model": ErrorResponse}})
async def get_workflow_definition(
    workflow_id: str,
    version: Optional[int] = None,
    runtime: Runtime = Depends(get_runtime),
) -> Workflow:
    """Get the latest, or a specific, version of a workflow."""
    workflow = await runtime.workflows.get(workflow_id, version)
    if workflow is None:
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found")
    return workflow


@router.put(
    "/{workflow_id}",
    response_model=Workflow,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def update_workflow(
    workflow_id: str,
    request: WorkflowUpdateRequest,
    runtime: Runtime = Depends(get_runtime),
) -> Workflow:
    """
    Update a workflow definition.

    Editing an enabled workflow stores a new version and re-registers its
    trigger; running executions keep their version.
    """
    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    try:
        return await runtime.toggle.update_definition(workflow_id, changes)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkflowValidationError as e:
        raise validation_error(e)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid workflow definition: {e}")


@router.delete(
    "/{workflow_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_workflow(workflow_id: str, runtime: Runtime = Depends(get_runtime)):
    """Unregister and delete a workflow. Its executions are kept."""
    if not await runtime.toggle.remove(workflow_id):
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found")
    logger.info(f"Deleted workflow: {workflow_id}")


# ============================================================
# Lifecycle
# ============================================================

@router.post(
    "/{workflow_id}/enable",
    response_model=Workflow,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def enable_workflow(workflow_id: str, runtime: Runtime = Depends(get_runtime)) -> Workflow:
    """Validate the graph and register the trigger."""
    try:
        return await runtime.toggle.enable(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkflowValidationError as e:
        raise validation_error(e)


@router.post("/{workflow_id}/disable", response_model=Workflow, responses={404: {"model": ErrorResponse}})
async def disable_workflow(workflow_id: str, runtime: Runtime = Depends(get_runtime)) -> Workflow:
    """Unregister the trigger. Running executions finish normally."""
    try:
        return await runtime.toggle.disable(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{workflow_id}/validate", response_model=ValidationReport, responses={404: {"model": ErrorResponse}})
async def validate_workflow(workflow_id: str, runtime: Runtime = Depends(get_runtime)) -> ValidationReport:
    try:
        return ValidationReport(**await runtime.toggle.can_enable(workflow_id))
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{workflow_id}/status", response_model=WorkflowStatusResponse, responses={404: {"model": ErrorResponse}})
async def workflow_status(workflow_id: str, runtime: Runtime = Depends(get_runtime)) -> WorkflowStatusResponse:
    """Enabled state, execution counts and success rate."""
    try:
        return WorkflowStatusResponse(**await runtime.toggle.status(workflow_id))
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ============================================================
# Execution
# ============================================================

@router.post(
    "/{workflow_id}/run",
    response_model=WorkflowExecution,
    responses={404: {"model": ErrorResponse}},
)
async def run_workflow(
    request: WorkflowRunRequest,
    workflow: Workflow = Depends(get_workflow),
    runtime: Runtime = Depends(get_runtime),
) -> WorkflowExecution:
    """
    Run a workflow manually and wait for it.

    Returns the execution once it finishes or suspends on a DELAY.
    """
    event = WorkflowEvent(type=request.event_type, payload=request.payload, source="api")
    return await runtime.engine.execute(workflow, event)


@router.get("/{workflow_id}/flow", responses={404: {"model": ErrorResponse}})
async def export_flow(workflow: Workflow = Depends(get_workflow)) -> Dict[str, Any]:
    """The workflow as React Flow nodes and edges, auto-laid out."""
    return to_react_flow(workflow)
