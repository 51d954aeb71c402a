"""Health, readiness, and version endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.config import get_settings
from checkpoint.database import get_session
from checkpoint.events.grace_period import find_overdue_events
from checkpoint.redis_client import redis_available

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe: 200 while the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, object]:
    """Readiness probe. Scans need the database; Redis backs the scheduler queue.

    ``overdue_events`` lists ended events whose grace period passed without
    points being distributed. They do not affect readiness; the sweep picks them up.
    """
    checks: dict[str, object] = {}
    overdue: list[int] = []

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
        overdue = [event.id for event in await find_overdue_events(db)]
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    checks["redis"] = "ok" if await redis_available() else "unavailable"

    all_ok = all(v == "ok" for v in checks.values())
    return {"status": "ready" if all_ok else "degraded", "checks": checks, "overdue_events": overdue}


@router.get("/version")
async def version() -> dict[str, str]:
    settings = get_settings()
    return {
        "version": settings.app_version,
        "environment": settings.environment,
    }
