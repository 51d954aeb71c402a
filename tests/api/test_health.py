"""Health endpoint tests."""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient

from checkpoint.db.models import Event


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    """GET /health returns 200 with healthy status."""
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_readiness_without_redis(client: AsyncClient) -> None:
    """GET /ready reports the database and flags Redis as unavailable when it is not initialized."""
    response = await client.get("/ready")
    assert response.status_code == 200
    data = response.json()
    assert data["checks"]["database"] == "ok"
    assert data["checks"]["redis"] == "unavailable"
    assert data["status"] == "degraded"


@pytest.mark.asyncio
async def test_version(client: AsyncClient) -> None:
    """GET /version returns version and environment."""
    response = await client.get("/version")
    assert response.status_code == 200
    data = response.json()
    assert data["version"] == "0.1.0"
    assert "environment" in data


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient) -> None:
    response = await client.get("/health", headers={"X-Request-Id": "scan-123"})
    assert response.headers["X-Request-Id"] == "scan-123"


@pytest.mark.asyncio
async def test_readiness_lists_overdue_events(client: AsyncClient, seed, db) -> None:
    """An ended event past its grace period with no distribution shows up as overdue."""
    assert (await client.get("/ready")).json()["overdue_events"] == []

    event = await db.get(Event, seed.event_id)
    event.ended_at = datetime.now(timezone.utc) - timedelta(hours=3)
    await db.commit()

    response = await client.get("/ready")
    assert response.json()["overdue_events"] == [seed.event_id]


@pytest.mark.asyncio
async def test_unusable_request_id_is_replaced(client: AsyncClient) -> None:
    response = await client.get("/health", headers={"X-Request-Id": "bad id with spaces"})
    request_id = response.headers["X-Request-Id"]
    assert request_id != "bad id with spaces"
    assert len(request_id) == 32
