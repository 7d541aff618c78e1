"""
File-backed Storage.

Write-through variants of the in-memory stores. Each record is a JSON file
under the data directory, written atomically (temp file + ``os.replace``)
so a crash never leaves a half-written record behind. Existing records are
loaded when the store is created, which is what lets pending executions and
DELAY checkpoints survive a restart.

Layout::

    <data_dir>/workflows/<workflow_id>.json     {"versions": [...]}
    <data_dir>/executions/<execution_id>.json
    <data_dir>/checkpoints/<execution_id>.json
"""

from typing import Any, Callable
from pathlib import Path
import asyncio
import json
import logging
import os

from storeflow.engine.models import Checkpoint, Workflow, WorkflowExecution
from storeflow.storage.memory import CheckpointStorage, ExecutionStorage, WorkflowStorage


logger = logging.getLogger(__name__)


def _write_atomic(path: Path, data: bytes) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def _remove(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


async def _run_io(func: Callable[..., Any], *args: Any) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func, *args)


def _load_dir(directory: Path, parse: Callable[[dict], None]) -> int:
    count = 0
    for path in sorted(directory.glob("*.json")):
        try:
            parse(json.loads(path.read_text(encoding="utf-8")))
            count += 1
        except ValueError as e:
            logger.error(f"Skipping unreadable record {path}: {e}")
    return count


class FileWorkflowStorage(WorkflowStorage):
    """Workflow definitions (all versions) persisted one file per workflow."""

    def __init__(self, data_dir: str):
        super().__init__()
        self.directory = Path(data_dir) / "workflows"
        self.directory.mkdir(parents=True, exist_ok=True)
        loaded = _load_dir(self.directory, self._load)
        logger.info(f"Loaded {loaded} workflow(s) from {self.directory}")

    def _load(self, data: dict) -> None:
        for raw in data.get("versions", []):
            workflow = Workflow.model_validate(raw)
            self._versions.setdefault(workflow.id, {})[workflow.version] = workflow

    async def _persist(self, workflow_id: str) -> None:
        versions = [self._versions[workflow_id][v] for v in sorted(self._versions[workflow_id])]
        payload = json.dumps({"versions": [w.model_dump(mode="json") for w in versions]}, indent=2)
        payload = payload.encode("utf-8")
        await _run_io(_write_atomic, self.directory / f"{workflow_id}.json", payload)

    async def _discard(self, workflow_id: str) -> None:
        await _run_io(_remove, self.directory / f"{workflow_id}.json")


class FileExecutionStorage(ExecutionStorage):
    """Executions persisted one file per execution."""

    def __init__(self, data_dir: str):
        super().__init__()
        self.directory = Path(data_dir) / "executions"
        self.directory.mkdir(parents=True, exist_ok=True)
        loaded = _load_dir(self.directory, self._load)
        logger.info(f"Loaded {loaded} execution(s) from {self.directory}")

    def _load(self, data: dict) -> None:
        execution = WorkflowExecution.model_validate(data)
        self._executions[execution.id] = execution

    async def _persist(self, execution_id: str) -> None:
        payload = self._executions[execution_id].model_dump_json(indent=2).encode("utf-8")
        await _run_io(_write_atomic, self.directory / f"{execution_id}.json", payload)


class FileCheckpointStorage(CheckpointStorage):
    """DELAY checkpoints persisted one file per suspended execution."""

    def __init__(self, data_dir: str):
        super().__init__()
        self.directory = Path(data_dir) / "checkpoints"
        self.directory.mkdir(parents=True, exist_ok=True)
        loaded = _load_dir(self.directory, self._load)
        logger.info(f"Loaded {loaded} checkpoint(s) from {self.directory}")

    def _load(self, data: dict) -> None:
        checkpoint = Checkpoint.model_validate(data)
        self._checkpoints[checkpoint.execution_id] = checkpoint

    async def _persist(self, execution_id: str) -> None:
        payload = self._checkpoints[execution_id].model_dump_json(indent=2).encode("utf-8")
        await _run_io(_write_atomic, self.directory / f"{execution_id}.json", payload)

    async def _discard(self, execution_id: str) -> None:
        await _run_io(_remove, self.directory / f"{execution_id}.json")
