"""
Templates package - Canned workflows and React Flow conversion.
"""

from storeflow.templates.catalog import TEMPLATES, WorkflowTemplate, get_template, list_templates
from storeflow.templates.install import install_template
from storeflow.templates.react_flow import auto_layout, from_react_flow, to_react_flow

__all__ = [
    "TEMPLATES",
    "WorkflowTemplate",
    "get_template",
    "list_templates",
    "install_template",
    "auto_layout",
    "from_react_flow",
    "to_react_flow",
]
