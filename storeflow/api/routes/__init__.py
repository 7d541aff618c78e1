"""
API route modules.
"""

from storeflow.api.routes import events, executions, templates, workflows

__all__ = ["events", "executions", "templates", "workflows"]
