"""
StoreFlow - event-driven workflow automation for store operations.

Workflows are node graphs (trigger, data access, conditions, loops, delays,
actions) executed by an async interpreter and started by published domain
events, schedules, or manual runs.
"""

__version__ = "1.0.0"
