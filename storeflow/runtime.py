"""
Runtime wiring.

Builds every component explicitly and hands the set around as a Runtime,
so the API, the scheduler loop and tests all share one graph of objects.
"""

from typing import Any, Callable, Optional, Tuple
from dataclasses import dataclass
from datetime import datetime
import asyncio
import logging

from storeflow.adapters.collaborators import (
    DataAccess,
    HttpClient,
    HttpxClient,
    MessageSender,
    NotificationDispatcher,
)
from storeflow.adapters.primitive import PrimitiveAdapter
from storeflow.adapters.transforms import TransformRegistry
from storeflow.config import Settings
from storeflow.engine.executor import WorkflowEngine
from storeflow.engine.models import utcnow
from storeflow.events.bus import EventBus
from storeflow.lifecycle.schedule import ScheduleRegistry
from storeflow.lifecycle.toggle import ToggleService
from storeflow.storage.file import FileCheckpointStorage, FileExecutionStorage, FileWorkflowStorage
from storeflow.storage.memory import CheckpointStorage, ExecutionStorage, WorkflowStorage


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Every long-lived component of one StoreFlow process."""
    settings: Settings
    workflows: WorkflowStorage
    executions: ExecutionStorage
    checkpoints: CheckpointStorage
    adapter: PrimitiveAdapter
    engine: WorkflowEngine
    bus: EventBus
    schedules: ScheduleRegistry
    toggle: ToggleService

    async def tick(self, now: Optional[datetime] = None) -> None:
        """One scheduler pass: fire due cron triggers, resume due DELAYs."""
        now = now or utcnow()
        await self.toggle.fire_due_schedules(now)
        await self.engine.resume_due(now)


def build_storage(settings: Settings) -> Tuple[WorkflowStorage, ExecutionStorage, CheckpointStorage]:
    backend = settings.STORAGE_BACKEND.lower()
    if backend == "memory":
        return WorkflowStorage(), ExecutionStorage(), CheckpointStorage()
    if backend == "file":
        logger.info(f"Using file storage in {settings.DATA_DIR}")
        return (
            FileWorkflowStorage(settings.DATA_DIR),
            FileExecutionStorage(settings.DATA_DIR),
            FileCheckpointStorage(settings.DATA_DIR),
        )
    raise ValueError(f"Unknown STORAGE_BACKEND '{settings.STORAGE_BACKEND}'")


def build_runtime(
    settings: Settings,
    data_access: Optional[DataAccess] = None,
    http_client: Optional[HttpClient] = None,
    message_sender: Optional[MessageSender] = None,
    notifier: Optional[NotificationDispatcher] = None,
    transforms: Optional[TransformRegistry] = None,
    sleep: Callable[[float], Any] = asyncio.sleep,
    clock: Callable[[], datetime] = utcnow,
) -> Runtime:
    """
    Wire storage, adapter, engine, bus, schedules and toggle service.

    Collaborators left out fall back to the in-memory defaults of the
    PrimitiveAdapter; HTTP defaults to an httpx client.
    """
    workflows, executions, checkpoints = build_storage(settings)

    adapter = PrimitiveAdapter(
        data_access=data_access,
        http_client=http_client or HttpxClient(timeout=settings.HTTP_TIMEOUT),
        message_sender=message_sender,
        notifier=notifier,
        transforms=transforms,
        http_timeout=settings.HTTP_TIMEOUT,
    )
    engine = WorkflowEngine(
        workflows,
        executions,
        checkpoints,
        adapter,
        max_attempts=settings.STEP_MAX_ATTEMPTS,
        base_delay=settings.RETRY_BASE_DELAY,
        max_delay=settings.RETRY_MAX_DELAY,
        loop_max_concurrency=settings.LOOP_MAX_CONCURRENCY,
        loop_max_items=settings.LOOP_MAX_ITEMS,
        sleep=sleep,
        clock=clock,
    )
    bus = EventBus(engine, workflows, history_size=settings.EVENT_HISTORY_SIZE)
    schedules = ScheduleRegistry()
    toggle = ToggleService(workflows, executions, bus, schedules, engine)

    return Runtime(
        settings=settings,
        workflows=workflows,
        executions=executions,
        checkpoints=checkpoints,
        adapter=adapter,
        engine=engine,
        bus=bus,
        schedules=schedules,
        toggle=toggle,
    )
