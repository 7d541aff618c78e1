"""
In-Memory Storage for the Workflow Engine.

Provides asyncio-safe storage for workflow definitions, executions and
suspension checkpoints. Records are copied on the way in and out so callers
never share mutable state with the store.

The ``_persist``/``_discard`` hooks are no-ops here; the file backend
overrides them to write through to disk.
"""

from typing import Dict, List, Optional
from datetime import datetime
import asyncio

from storeflow.engine.models import (
    Checkpoint,
    ExecutionStatus,
    NodeResult,
    Workflow,
    WorkflowExecution,
    utcnow,
)


class WorkflowStorage:
    """
    Versioned storage for workflow definitions.

    Every saved version is kept so in-flight executions can keep running
    against the version they started with.
    """

    def __init__(self):
        self._versions: Dict[str, Dict[int, Workflow]] = {}
        self._lock = asyncio.Lock()

    async def save(self, workflow: Workflow) -> Workflow:
        """
        Save a workflow as its current version.

        Saving an existing version overwrites it; bump ``version`` first
        to keep the previous definition.
        """
        async with self._lock:
            stored = workflow.model_copy(deep=True)
            stored.updated_at = utcnow()
            self._versions.setdefault(stored.id, {})[stored.version] = stored
            await self._persist(stored.id)
            return stored.model_copy(deep=True)

    async def get(self, workflow_id: str, version: Optional[int] = None) -> Optional[Workflow]:
        """Get the latest (or a specific) version of a workflow."""
        async with self._lock:
            versions = self._versions.get(workflow_id)
            if not versions:
                return None
            workflow = versions.get(version if version is not None else max(versions))
            return workflow.model_copy(deep=True) if workflow else None

    async def get_by_slug(self, slug: str) -> Optional[Workflow]:
        async with self._lock:
            for versions in self._versions.values():
                latest = versions[max(versions)]
                if latest.slug == slug:
                    return latest.model_copy(deep=True)
            return None

    async def list_all(self) -> List[Workflow]:
        """List the latest version of every workflow."""
        async with self._lock:
            return [
                versions[max(versions)].model_copy(deep=True)
                for versions in self._versions.values()
            ]

    async def list_versions(self, workflow_id: str) -> List[int]:
        async with self._lock:
            return sorted(self._versions.get(workflow_id, {}))

    async def delete(self, workflow_id: str) -> bool:
        """Delete a workflow and all its versions."""
        async with self._lock:
            if workflow_id in self._versions:
                del self._versions[workflow_id]
                await self._discard(workflow_id)
                return True
            return False

    async def mark_run(self, workflow_id: str, when: datetime) -> bool:
        """Stamp ``last_run_at`` on every version without touching ``updated_at``."""
        async with self._lock:
            versions = self._versions.get(workflow_id)
            if not versions:
                return False
            for workflow in versions.values():
                workflow.last_run_at = when
            await self._persist(workflow_id)
            return True

    async def exists(self, workflow_id: str) -> bool:
        async with self._lock:
            return workflow_id in self._versions

    async def _persist(self, workflow_id: str) -> None:
        pass

    async def _discard(self, workflow_id: str) -> None:
        pass

    def __len__(self) -> int:
        return len(self._versions)


class ExecutionStorage:
    """
    Storage for workflow executions.

    Node results are append-only: ``append_result`` is the only way to add
    them and nothing removes them.
    """

    def __init__(self):
        self._executions: Dict[str, WorkflowExecution] = {}
        self._lock = asyncio.Lock()

    async def create(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._lock:
            self._executions[execution.id] = execution.model_copy(deep=True)
            await self._persist(execution.id)
            return execution

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        async with self._lock:
            execution = self._executions.get(execution_id)
            return execution.model_copy(deep=True) if execution else None

    async def save(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Replace the stored record with the given one."""
        async with self._lock:
            self._executions[execution.id] = execution.model_copy(deep=True)
            await self._persist(execution.id)
            return execution

    async def append_result(self, execution_id: str, result: NodeResult) -> Optional[WorkflowExecution]:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                return None
            execution.node_results.append(result.model_copy(deep=True))
            await self._persist(execution_id)
            return execution.model_copy(deep=True)

    async def list_all(self) -> List[WorkflowExecution]:
        async with self._lock:
            return [e.model_copy(deep=True) for e in self._executions.values()]

    async def list_by_workflow(self, workflow_id: str) -> List[WorkflowExecution]:
        async with self._lock:
            return [
                e.model_copy(deep=True)
                for e in self._executions.values()
                if e.workflow_id == workflow_id
            ]

    async def list_by_status(self, status: ExecutionStatus) -> List[WorkflowExecution]:
        async with self._lock:
            return [
                e.model_copy(deep=True)
                for e in self._executions.values()
                if e.status == status
            ]

    async def _persist(self, execution_id: str) -> None:
        pass

    def __len__(self) -> int:
        return len(self._executions)


class CheckpointStorage:
    """Storage for DELAY suspension checkpoints, keyed by execution id."""

    def __init__(self):
        self._checkpoints: Dict[str, Checkpoint] = {}
        self._lock = asyncio.Lock()

    async def save(self, checkpoint: Checkpoint) -> Checkpoint:
        async with self._lock:
            self._checkpoints[checkpoint.execution_id] = checkpoint.model_copy(deep=True)
            await self._persist(checkpoint.execution_id)
            return checkpoint

    async def get(self, execution_id: str) -> Optional[Checkpoint]:
        async with self._lock:
            checkpoint = self._checkpoints.get(execution_id)
            return checkpoint.model_copy(deep=True) if checkpoint else None

    async def delete(self, execution_id: str) -> bool:
        async with self._lock:
            if execution_id in self._checkpoints:
                del self._checkpoints[execution_id]
                await self._discard(execution_id)
                return True
            return False

    async def list_due(self, now: datetime) -> List[Checkpoint]:
        """Checkpoints whose resume time has passed, oldest first."""
        async with self._lock:
            due = [c for c in self._checkpoints.values() if c.resume_at <= now]
            return [c.model_copy(deep=True) for c in sorted(due, key=lambda c: c.resume_at)]

    async def list_all(self) -> List[Checkpoint]:
        async with self._lock:
            return [c.model_copy(deep=True) for c in self._checkpoints.values()]

    async def _persist(self, execution_id: str) -> None:
        pass

    async def _discard(self, execution_id: str) -> None:
        pass

    def __len__(self) -> int:
        return len(self._checkpoints)
