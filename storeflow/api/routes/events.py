"""
Event API Routes.

Lets producers outside the process publish domain events onto the bus.
"""

from fastapi import APIRouter, Depends, Query, status
import logging

from storeflow.api.deps import get_runtime
from storeflow.api.schemas import (
    EventHistoryResponse,
    EventPublishRequest,
    EventPublishResponse,
    SubscriptionInfo,
)
from storeflow.engine.models import WorkflowEvent
from storeflow.runtime import Runtime


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["Events"])


@router.post("", response_model=EventPublishResponse, status_code=status.HTTP_202_ACCEPTED)
async def publish_event(
    request: EventPublishRequest,
    runtime: Runtime = Depends(get_runtime),
) -> EventPublishResponse:
    """
    Publish an event.

    Responds once every matching execution is scheduled; the executions
    run in the background.
    """
    fields = request.model_dump(exclude_none=True)
    event = WorkflowEvent(**fields)
    execution_ids = await runtime.bus.publish(event)
    return EventPublishResponse(event_id=event.id, execution_ids=execution_ids, count=len(execution_ids))


@router.get("", response_model=EventHistoryResponse)
async def event_history(
    limit: int = Query(100, ge=1, le=1000),
    runtime: Runtime = Depends(get_runtime),
) -> EventHistoryResponse:
    """Recently published events, oldest first."""
    events = runtime.bus.history(limit)
    return EventHistoryResponse(events=events, total=len(events))


@router.get("/subscriptions")
async def list_subscriptions(runtime: Runtime = Depends(get_runtime)):
    """Active event subscriptions, highest priority first."""
    subscriptions = sorted(runtime.bus.subscriptions(), key=lambda s: s.priority, reverse=True)
    return [SubscriptionInfo(**s.model_dump()) for s in subscriptions]
