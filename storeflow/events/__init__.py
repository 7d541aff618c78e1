"""
Events package - Pub/sub dispatch of domain events to workflows.
"""

from storeflow.events.bus import EventBus, matches_filters, matches_pattern

__all__ = [
    "EventBus",
    "matches_filters",
    "matches_pattern",
]
