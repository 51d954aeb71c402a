"""Best-effort outbound webhook.

Notifications are fired after the triggering transaction has committed and
never block or roll it back: failures are logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from checkpoint.clock import to_utc_z, utcnow
from checkpoint.config import get_settings

logger = logging.getLogger(__name__)

# Strong references so pending sends are not garbage-collected mid-flight.
_pending: set[asyncio.Task[bool]] = set()


async def notify(event_type: str, payload: dict[str, Any]) -> bool:
    """POST ``{"event": event_type, "data": payload}`` to the configured webhook.

    Returns True on a 2xx response, False on any failure or when no webhook
    is configured.
    """
    settings = get_settings()
    if not settings.notification_webhook_url:
        logger.debug("No notification webhook configured; dropping %s", event_type)
        return False

    body = {"event": event_type, "sent_at": to_utc_z(utcnow()), "data": payload}
    try:
        async with httpx.AsyncClient(timeout=settings.notification_timeout_seconds) as client:
            resp = await client.post(settings.notification_webhook_url, json=body)
            resp.raise_for_status()
    except httpx.HTTPError:
        logger.warning("Notification %s failed", event_type, exc_info=True)
        return False
    return True


def notify_in_background(event_type: str, payload: dict[str, Any]) -> asyncio.Task[bool]:
    """Schedule ``notify`` without awaiting it."""
    task = asyncio.create_task(notify(event_type, payload))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task
