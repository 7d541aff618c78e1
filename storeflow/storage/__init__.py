"""
Storage package - Workflow, execution and checkpoint stores.
"""

from storeflow.storage.memory import (
    CheckpointStorage,
    ExecutionStorage,
    WorkflowStorage,
)
from storeflow.storage.file import (
    FileCheckpointStorage,
    FileExecutionStorage,
    FileWorkflowStorage,
)

__all__ = [
    "WorkflowStorage",
    "ExecutionStorage",
    "CheckpointStorage",
    "FileWorkflowStorage",
    "FileExecutionStorage",
    "FileCheckpointStorage",
]
