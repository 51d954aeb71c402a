"""arq worker for the grace-period scheduler tasks.

Run with: arq checkpoint.workers.tasks.WorkerSettings

Each task retries with linear backoff (``job_try * task_retry_backoff_seconds``).
On the last allowed attempt the event's scheduling flags are reset so an
operator can re-trigger the flow, and the error is re-raised.
"""

from __future__ import annotations

import logging

from arq import Retry
from arq.connections import RedisSettings
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.config import get_settings
from checkpoint.database import close_db, get_session_factory, init_db
from checkpoint.events.grace_period import (
    TaskReport,
    reset_schedule_flags,
    run_auto_checkout,
    run_points_distribution,
)
from checkpoint.middleware.logging import setup_logging
from checkpoint.workers.queue import ArqTaskQueue, ScheduledTask, TaskKind, TaskQueue

logger = logging.getLogger(__name__)


async def _get_db_session() -> AsyncSession:
    """Get a database session for the worker."""
    return get_session_factory()()


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB and the task queue on worker startup."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    # arq puts its own pool in ctx["redis"]; tasks re-enqueue through it.
    ctx.setdefault("queue", ArqTaskQueue(ctx["redis"]))
    logger.info("Scheduler worker started")


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    await close_db()
    logger.info("Scheduler worker shut down")


async def _fail_or_retry(db: AsyncSession, kind: TaskKind, event_id: int, job_try: int, exc: Exception) -> None:
    settings = get_settings()
    if job_try >= settings.task_max_attempts:
        logger.error(
            "%s for event %d failed after %d attempts; resetting scheduling flags",
            kind.value, event_id, job_try, exc_info=exc,
        )
        await reset_schedule_flags(db, event_id)
        return
    defer = job_try * settings.task_retry_backoff_seconds
    logger.warning(
        "%s for event %d failed (attempt %d), retrying in %ds: %s",
        kind.value, event_id, job_try, defer, exc,
    )
    raise Retry(defer=defer) from exc


async def _run(ctx: dict, kind: TaskKind, event_id: int) -> str:  # type: ignore[type-arg]
    queue: TaskQueue = ctx["queue"]
    job_try: int = ctx.get("job_try", 1)
    handle = ScheduledTask(kind, event_id, job_id=ctx.get("job_id"), attempt_count=job_try)
    db = await _get_db_session()
    try:
        report: TaskReport
        if kind is TaskKind.AUTO_CHECKOUT:
            report = await run_auto_checkout(db, queue, event_id, handle=handle)
        else:
            report = await run_points_distribution(db, queue, event_id, handle=handle)
    except Exception as exc:
        await db.rollback()
        await _fail_or_retry(db, kind, event_id, job_try, exc)
        raise
    finally:
        await db.close()
    return report.outcome.value


async def auto_checkout(ctx: dict, event_id: int) -> str:  # type: ignore[type-arg]
    """AUTO_CHECKOUT: close open attendees after the grace period, then chain distribution."""
    return await _run(ctx, TaskKind.AUTO_CHECKOUT, event_id)


async def distribute_points(ctx: dict, event_id: int) -> str:  # type: ignore[type-arg]
    """DISTRIBUTE_POINTS: award attendee and leader points once per event."""
    return await _run(ctx, TaskKind.DISTRIBUTE_POINTS, event_id)


class WorkerSettings:
    """arq worker settings for the grace-period scheduler."""

    functions = [auto_checkout, distribute_points]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    max_tries = get_settings().task_max_attempts
    max_jobs = 10
    job_timeout = get_settings().task_job_timeout_seconds
    allow_abort_jobs = True
