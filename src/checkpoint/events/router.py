"""Event lifecycle endpoints: end and deactivate."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.database import get_session
from checkpoint.dependencies import get_task_queue
from checkpoint.events import grace_period
from checkpoint.events.schemas import EndEventResponse, EventStateResponse
from checkpoint.workers.queue import TaskQueue

router = APIRouter(prefix="/api/v1", tags=["Events"])


@router.post("/events/{event_id}/end", response_model=EndEventResponse)
async def end_event(
    event_id: int,
    db: AsyncSession = Depends(get_session),
    queue: TaskQueue = Depends(get_task_queue),
):
    """End the event now and schedule auto-checkout after the grace period.

    Calling it again is harmless: the first end time is kept.
    """
    return EndEventResponse(**await grace_period.end_event(db, queue, event_id))


@router.post("/events/{event_id}/deactivate", response_model=EventStateResponse)
async def deactivate_event(
    event_id: int,
    db: AsyncSession = Depends(get_session),
):
    """Cancel an event. Pending auto-checkout and distribution tasks turn into no-ops."""
    event = await grace_period.deactivate_event(db, event_id)
    return EventStateResponse(
        event_id=event.id,
        active=event.active,
        ended_at=event.ended_at,
        auto_close_scheduled=event.auto_close_scheduled,
        points_distribution_scheduled=event.points_distribution_scheduled,
        points_distributed=event.points_distributed,
    )
