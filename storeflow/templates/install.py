"""
Template installation.
"""

from typing import Any, Dict, Optional
import logging

from storeflow.engine.errors import TemplateNotFoundError
from storeflow.engine.models import Workflow
from storeflow.storage.memory import WorkflowStorage
from storeflow.templates.catalog import get_template


logger = logging.getLogger(__name__)


async def unique_slug(workflows: WorkflowStorage, base: str) -> str:
    """``base``, or ``base-1``, ``base-2``... whichever is still free."""
    slug = base
    counter = 1
    while await workflows.get_by_slug(slug) is not None:
        slug = f"{base}-{counter}"
        counter += 1
    return slug


async def install_template(
    workflows: WorkflowStorage,
    slug: str,
    name: Optional[str] = None,
    config_overrides: Optional[Dict[str, Dict[str, Any]]] = None,
) -> Workflow:
    """
    Install a template as a new, disabled workflow.

    Args:
        workflows: Workflow storage to save into
        slug: Template slug
        name: Workflow name (defaults to the template name)
        config_overrides: Per node id, config keys merged over the template's

    Raises:
        TemplateNotFoundError: Unknown template slug
    """
    template = get_template(slug)
    if template is None:
        raise TemplateNotFoundError(slug)

    overrides = config_overrides or {}
    nodes = []
    for node in template.nodes:
        if node.id in overrides:
            node.config = {**node.config, **overrides[node.id]}
        nodes.append(node)

    workflow = Workflow(
        name=name or template.name,
        slug=await unique_slug(workflows, f"{template.slug}-copy"),
        description=template.description,
        category=template.category,
        trigger=template.trigger,
        nodes=nodes,
        edges=template.edges,
        variables=template.variables,
        enabled=False,
    )
    saved = await workflows.save(workflow)
    logger.info(f"Installed template '{slug}' as workflow '{saved.slug}'")
    return saved
