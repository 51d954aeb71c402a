"""Delayed task queue used by the grace-period scheduler.

The scheduler only sees the ``TaskQueue`` protocol; production runs it on
arq (Redis), tests substitute an in-memory recorder. Delivery is
at-least-once, so every handler must tolerate running twice.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Protocol

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

logger = logging.getLogger(__name__)


class TaskKind(str, enum.Enum):
    """Task kinds. The value is the arq function name."""

    AUTO_CHECKOUT = "auto_checkout"
    DISTRIBUTE_POINTS = "distribute_points"


@dataclass(frozen=True)
class ScheduledTask:
    """Handle to an enqueued task."""

    task_kind: TaskKind
    event_id: int
    not_before: datetime | None = None
    job_id: str | None = None
    attempt_count: int = 0


class TaskQueue(Protocol):
    async def enqueue(
        self,
        kind: TaskKind,
        payload: dict[str, Any],
        not_before: datetime | None = None,
    ) -> ScheduledTask: ...

    async def reenqueue(self, handle: ScheduledTask, new_not_before: datetime) -> ScheduledTask: ...


class ArqTaskQueue:
    """TaskQueue on an arq Redis pool."""

    def __init__(self, pool: ArqRedis) -> None:
        self._pool = pool

    async def enqueue(
        self,
        kind: TaskKind,
        payload: dict[str, Any],
        not_before: datetime | None = None,
    ) -> ScheduledTask:
        job = await self._pool.enqueue_job(kind.value, _defer_until=not_before, **payload)
        if job is None:
            msg = f"arq refused to enqueue {kind.value} for {payload}"
            raise RuntimeError(msg)
        logger.info(
            "Enqueued %s job %s for event %s (not_before=%s)",
            kind.value, job.job_id, payload.get("event_id"), not_before,
        )
        return ScheduledTask(
            task_kind=kind,
            event_id=int(payload["event_id"]),
            not_before=not_before,
            job_id=job.job_id,
        )

    async def reenqueue(self, handle: ScheduledTask, new_not_before: datetime) -> ScheduledTask:
        """Schedule a fresh job for the same task at a later time.

        A running arq job cannot move itself, so the early job finishes as a
        no-op and the new one carries the watermark.
        """
        task = await self.enqueue(handle.task_kind, {"event_id": handle.event_id}, new_not_before)
        return replace(task, attempt_count=handle.attempt_count)

    async def close(self) -> None:
        await self._pool.aclose()


_queue: ArqTaskQueue | None = None


async def init_queue(url: str) -> None:
    """Open the arq pool used to enqueue scheduler tasks."""
    global _queue  # noqa: PLW0603
    pool = await create_pool(RedisSettings.from_dsn(url))
    _queue = ArqTaskQueue(pool)


async def close_queue() -> None:
    global _queue  # noqa: PLW0603
    if _queue:
        await _queue.close()
        _queue = None


def get_queue() -> TaskQueue:
    """Get the task queue (FastAPI dependency)."""
    if _queue is None:
        msg = "Task queue not initialized. Call init_queue() first."
        raise RuntimeError(msg)
    return _queue
