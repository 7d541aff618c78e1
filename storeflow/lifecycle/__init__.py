"""
Lifecycle package - Enable/disable of workflows and schedule triggers.
"""

from storeflow.lifecycle.schedule import CronExpression, ScheduleEntry, ScheduleRegistry
from storeflow.lifecycle.toggle import ToggleService

__all__ = [
    "CronExpression",
    "ScheduleEntry",
    "ScheduleRegistry",
    "ToggleService",
]
