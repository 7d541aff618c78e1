"""
Template API Routes.

Endpoints for browsing and installing canned workflows.
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status
import logging

from storeflow.api.deps import get_runtime
from storeflow.api.schemas import (
    ErrorResponse,
    TemplateInfo,
    TemplateInstallRequest,
    TemplateListResponse,
)
from storeflow.engine.errors import TemplateNotFoundError
from storeflow.engine.models import Workflow
from storeflow.runtime import Runtime
from storeflow.templates.catalog import WorkflowTemplate, get_template, list_templates
from storeflow.templates.install import install_template


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/templates", tags=["Templates"])


def _info(template: WorkflowTemplate) -> TemplateInfo:
    return TemplateInfo(
        slug=template.slug,
        name=template.name,
        description=template.description,
        category=template.category,
        tags=template.tags,
        trigger_type=template.trigger.type.value,
        node_count=len(template.nodes),
    )


@router.get("", response_model=TemplateListResponse)
async def list_workflow_templates(category: Optional[str] = None) -> TemplateListResponse:
    """List the available templates."""
    templates = [_info(t) for t in list_templates(category)]
    return TemplateListResponse(templates=templates, total=len(templates))


@router.get("/{slug}", response_model=WorkflowTemplate, responses={404: {"model": ErrorResponse}})
async def get_workflow_template(slug: str) -> WorkflowTemplate:
    """Get a template with its full graph."""
    template = get_template(slug)
    if template is None:
        raise HTTPException(status_code=404, detail=f"Template '{slug}' not found")
    return template


@router.post(
    "/{slug}/install",
    response_model=Workflow,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}},
)
async def install_workflow_template(
    slug: str,
    request: Optional[TemplateInstallRequest] = None,
    runtime: Runtime = Depends(get_runtime),
) -> Workflow:
    """Install a template as a new, disabled workflow."""
    request = request or TemplateInstallRequest()
    try:
        return await install_template(
            runtime.workflows,
            slug,
            name=request.name,
            config_overrides=request.config_overrides,
        )
    except TemplateNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
