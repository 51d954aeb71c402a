"""Grace-period scheduler: end event -> AUTO_CHECKOUT -> DISTRIBUTE_POINTS.

Per event: RUNNING -> ENDED (auto-close pending) -> AUTO_CLOSED
(distribution pending) -> DISTRIBUTED.

Both tasks are driven by a durable delayed queue and are safe to run more
than once. A task that wakes before ``ended_at + grace_period_hours``
schedules a fresh copy of itself for the watermark and changes nothing.
A scheduling flag is committed just before its enqueue (and cleared again if
the enqueue fails) and cleared on terminal success or terminal failure, so
operators can always re-trigger.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.attendance import ledger
from checkpoint.clock import utcnow
from checkpoint.db.models import Event
from checkpoint.errors import AlreadyDistributed, EventInactive, EventNotFound
from checkpoint.points.distribution import DistributionResult, distribute
from checkpoint.workers.queue import ScheduledTask, TaskKind, TaskQueue

logger = logging.getLogger(__name__)


class TaskOutcome(str, enum.Enum):
    SKIPPED = "skipped"
    RESCHEDULED = "rescheduled"
    COMPLETED = "completed"
    ALREADY_DONE = "already_done"


@dataclass
class TaskReport:
    outcome: TaskOutcome
    event_id: int
    not_before: datetime | None = None
    closed: int = 0
    distribution: DistributionResult | None = None
    rescheduled_as: ScheduledTask | None = None


def grace_period_end(event: Event) -> datetime | None:
    """``ended_at + grace_period_hours``, or None while the event is running."""
    if event.ended_at is None:
        return None
    return event.ended_at + timedelta(hours=event.grace_period_hours)


async def _load_event(db: AsyncSession, event_id: int) -> Event | None:
    return await db.get(Event, event_id, populate_existing=True)


async def _set_flag(db: AsyncSession, event_id: int, **values: bool) -> None:
    await db.execute(
        update(Event)
        .where(Event.id == event_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def _schedule(
    db: AsyncSession,
    queue: TaskQueue,
    kind: TaskKind,
    event_id: int,
    flag: str,
    not_before: datetime | None = None,
) -> ScheduledTask:
    """Commit ``flag`` then enqueue; the flag is cleared again if the enqueue fails.

    The job can run and clear the flag before ``enqueue`` returns, so the flag
    must be committed first.
    """
    await _set_flag(db, event_id, **{flag: True})
    await db.commit()
    try:
        return await queue.enqueue(kind, {"event_id": event_id}, not_before)
    except Exception:
        logger.exception("Could not enqueue %s for event %d", kind.value, event_id)
        await _set_flag(db, event_id, **{flag: False})
        await db.commit()
        raise


async def end_event(
    db: AsyncSession,
    queue: TaskQueue,
    event_id: int,
    now: datetime | None = None,
) -> dict[str, object]:
    """Mark an event ended and schedule its auto-checkout.

    Idempotent: an already-ended event keeps its ``ended_at``, and the task is
    not scheduled again while ``auto_close_scheduled`` is set.
    """
    now = now or utcnow()
    event = await _load_event(db, event_id)
    if event is None:
        raise EventNotFound(event_id=event_id)
    if not event.active:
        raise EventInactive(event_id=event_id)

    already_ended = event.ended_at is not None
    if not already_ended:
        event.ended_at = now
        await db.commit()

    not_before = grace_period_end(event)
    scheduled = False
    job_id = None
    if event.points_distributed:
        logger.info("Event %d already distributed; nothing to schedule", event.id)
    elif not event.auto_close_scheduled:
        task = await _schedule(db, queue, TaskKind.AUTO_CHECKOUT, event.id, "auto_close_scheduled", not_before)
        scheduled = True
        job_id = task.job_id
        logger.info(
            "Event %d ended at %s; auto-checkout scheduled for %s",
            event.id, event.ended_at.isoformat(), not_before.isoformat(),  # type: ignore[union-attr]
        )
    else:
        logger.info("Event %d already has a pending auto-checkout", event.id)

    return {
        "event_id": event.id,
        "ended_at": event.ended_at,
        "grace_period_hours": event.grace_period_hours,
        "not_before": not_before,
        "already_ended": already_ended,
        "scheduled": scheduled,
        "job_id": job_id,
    }


async def run_auto_checkout(
    db: AsyncSession,
    queue: TaskQueue | None,
    event_id: int,
    now: datetime | None = None,
    handle: ScheduledTask | None = None,
) -> TaskReport:
    """Body of the AUTO_CHECKOUT task.

    Force-completes every attendee still inside with ``exited_at`` set to the
    end of the grace period, clears ``auto_close_scheduled`` and chains
    DISTRIBUTE_POINTS for immediate execution. Without a queue (inline runs)
    nothing is chained and an early call is skipped.
    """
    now = now or utcnow()
    event = await _load_event(db, event_id)
    if event is None or not event.active or event.ended_at is None:
        logger.warning("Auto-checkout for event %d skipped: event missing, inactive or not ended", event_id)
        return TaskReport(TaskOutcome.SKIPPED, event_id)

    not_before = event.ended_at + timedelta(hours=event.grace_period_hours)
    if now < not_before:
        if queue is None:
            return TaskReport(TaskOutcome.SKIPPED, event_id, not_before=not_before)
        handle = handle or ScheduledTask(TaskKind.AUTO_CHECKOUT, event_id)
        remaining = int((not_before - now).total_seconds() // 60)
        logger.warning(
            "Event %d grace period not expired yet (%d minutes remaining), re-queueing",
            event_id, remaining,
        )
        new_handle = await queue.reenqueue(handle, not_before)
        return TaskReport(TaskOutcome.RESCHEDULED, event_id, not_before=not_before, rescheduled_as=new_handle)

    try:
        closed = await ledger.force_complete_open(db, event_id, at=not_before)
        await _set_flag(db, event_id, auto_close_scheduled=False)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("Auto-checkout for event %d closed %d attendees at %s", event_id, closed, not_before.isoformat())

    if queue is not None:
        await _schedule(db, queue, TaskKind.DISTRIBUTE_POINTS, event_id, "points_distribution_scheduled")

    return TaskReport(TaskOutcome.COMPLETED, event_id, not_before=not_before, closed=closed)


async def run_points_distribution(
    db: AsyncSession,
    queue: TaskQueue | None,
    event_id: int,
    now: datetime | None = None,
    handle: ScheduledTask | None = None,
) -> TaskReport:
    """Body of the DISTRIBUTE_POINTS task. No-op once points are distributed."""
    now = now or utcnow()
    event = await _load_event(db, event_id)
    if event is None or not event.active or event.ended_at is None:
        logger.warning("Points distribution for event %d skipped: event missing, inactive or not ended", event_id)
        return TaskReport(TaskOutcome.SKIPPED, event_id)

    if event.points_distributed:
        if event.points_distribution_scheduled:
            await _set_flag(db, event_id, points_distribution_scheduled=False)
            await db.commit()
        logger.info("Points already distributed for event %d", event_id)
        return TaskReport(TaskOutcome.ALREADY_DONE, event_id)

    not_before = event.ended_at + timedelta(hours=event.grace_period_hours)
    if now < not_before:
        if queue is None:
            return TaskReport(TaskOutcome.SKIPPED, event_id, not_before=not_before)
        handle = handle or ScheduledTask(TaskKind.DISTRIBUTE_POINTS, event_id)
        logger.warning("Points distribution for event %d woke before %s, re-queueing", event_id, not_before)
        new_handle = await queue.reenqueue(handle, not_before)
        return TaskReport(TaskOutcome.RESCHEDULED, event_id, not_before=not_before, rescheduled_as=new_handle)

    try:
        result = await distribute(db, event_id, now=now)
    except AlreadyDistributed:
        outcome = TaskOutcome.ALREADY_DONE
        result = None
    else:
        outcome = TaskOutcome.COMPLETED
    await _set_flag(db, event_id, points_distribution_scheduled=False)
    await db.commit()
    return TaskReport(outcome, event_id, not_before=not_before, distribution=result)


async def reset_schedule_flags(db: AsyncSession, event_id: int) -> None:
    """Clear both scheduling flags so the flow can be triggered again."""
    await _set_flag(db, event_id, auto_close_scheduled=False, points_distribution_scheduled=False)
    await db.commit()
    logger.warning("Scheduling flags reset for event %d", event_id)


async def deactivate_event(db: AsyncSession, event_id: int) -> Event:
    """Administrative cancellation. Pending tasks for the event become no-ops."""
    event = await _load_event(db, event_id)
    if event is None:
        raise EventNotFound(event_id=event_id)
    event.active = False
    event.auto_close_scheduled = False
    event.points_distribution_scheduled = False
    await db.commit()
    logger.info("Event %d deactivated", event_id)
    return event


async def find_overdue_events(db: AsyncSession, now: datetime | None = None) -> list[Event]:
    """Active, ended, undistributed events whose grace period has passed.

    Fallback for a lost queue: the sweep runs the same task bodies.
    """
    now = now or utcnow()
    result = await db.execute(
        select(Event)
        .where(
            Event.active.is_(True),
            Event.ended_at.is_not(None),
            Event.points_distributed.is_(False),
        )
        .order_by(Event.ended_at, Event.id)
    )
    return [event for event in result.scalars().all() if grace_period_end(event) <= now]  # type: ignore[operator]


async def sweep(db: AsyncSession, now: datetime | None = None) -> list[TaskReport]:
    """Close and distribute every overdue event inline, without the queue."""
    now = now or utcnow()
    reports = []
    for event in await find_overdue_events(db, now):
        event_id = event.id
        await run_auto_checkout(db, None, event_id, now=now)
        reports.append(await run_points_distribution(db, None, event_id, now=now))
    return reports

