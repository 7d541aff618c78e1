"""
Adapters package - Primitive adapter, collaborators and transforms.
"""

from storeflow.adapters.collaborators import (
    CollaboratorError,
    HttpxClient,
    InMemoryDataAccess,
    InMemoryNotificationDispatcher,
    LoggingMessageSender,
)
from storeflow.adapters.primitive import PrimitiveAdapter, StepOutcome
from storeflow.adapters.transforms import TransformRegistry, register_transform, transform_registry

__all__ = [
    "CollaboratorError",
    "HttpxClient",
    "InMemoryDataAccess",
    "InMemoryNotificationDispatcher",
    "LoggingMessageSender",
    "PrimitiveAdapter",
    "StepOutcome",
    "TransformRegistry",
    "register_transform",
    "transform_registry",
]
