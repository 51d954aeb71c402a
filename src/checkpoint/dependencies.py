"""Shared FastAPI dependencies."""

from checkpoint.workers.queue import TaskQueue, get_queue


def get_task_queue() -> TaskQueue:
    """Delayed task queue used by the event endpoints (overridden in tests)."""
    return get_queue()
