"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from checkpoint.config import get_settings
from checkpoint.database import close_db, get_engine, get_session_factory, init_db
from checkpoint.db.base import Base
from checkpoint.db.models import Campaign, Event, Persona, QrCode, UniverseType
from checkpoint.dependencies import get_task_queue
from checkpoint.qr import registry
from checkpoint.workers.queue import ScheduledTask, TaskKind


class FakeQueue:
    """In-memory TaskQueue that records what the scheduler asked for."""

    def __init__(self) -> None:
        self.enqueued: list[ScheduledTask] = []
        self.reenqueued: list[ScheduledTask] = []
        self.fail_next = False
        # Runs the job as if a worker picked it up before enqueue returned.
        self.on_enqueue: Callable[[ScheduledTask], Awaitable[None]] | None = None

    async def enqueue(
        self,
        kind: TaskKind,
        payload: dict[str, Any],
        not_before: datetime | None = None,
    ) -> ScheduledTask:
        if self.fail_next:
            self.fail_next = False
            raise RuntimeError("queue unavailable")
        task = ScheduledTask(
            task_kind=kind,
            event_id=int(payload["event_id"]),
            not_before=not_before,
            job_id=f"job-{len(self.enqueued) + len(self.reenqueued) + 1}",
        )
        self.enqueued.append(task)
        if self.on_enqueue is not None:
            await self.on_enqueue(task)
        return task

    async def reenqueue(self, handle: ScheduledTask, new_not_before: datetime) -> ScheduledTask:
        task = replace(
            handle,
            not_before=new_not_before,
            job_id=f"job-{len(self.enqueued) + len(self.reenqueued) + 1}",
        )
        self.reenqueued.append(task)
        return task

    def kinds(self) -> list[TaskKind]:
        return [task.task_kind for task in self.enqueued]


@dataclass
class Seed:
    """Ids of the rows every integration test starts from."""

    campaign_id: int
    other_campaign_id: int
    event_id: int
    leader_id: int
    militant_id: int
    alice_id: int
    bob_id: int
    carol_id: int
    codes: dict[str, str]
    leader_code: str


@pytest_asyncio.fixture
async def engine(tmp_path, monkeypatch) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite file database with the full schema, one per test."""
    monkeypatch.setenv("CKP_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'checkpoint.db'}")
    monkeypatch.setenv("CKP_NOTIFICATION_WEBHOOK_URL", "")
    monkeypatch.setenv("CKP_UNIVERSE_POINT_MULTIPLIERS", "{}")
    get_settings.cache_clear()

    await init_db(get_settings().database_url)
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield get_engine()

    await close_db()
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def db(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """A database session for the code under test and for assertions."""
    async with get_session_factory()() as session:
        yield session


@pytest_asyncio.fixture
async def other_db(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """A second, independent session (concurrent writer)."""
    async with get_session_factory()() as session:
        yield session


@pytest.fixture
def queue() -> FakeQueue:
    return FakeQueue()


@pytest_asyncio.fixture
async def seed(db: AsyncSession) -> Seed:
    """One campaign with an event, its codes, a leader, a militant and three guests."""
    campaign = Campaign(name="Campaña Norte")
    other = Campaign(name="Campaña Sur")
    db.add_all([campaign, other])
    await db.flush()

    event = Event(
        campaign_id=campaign.id,
        name="Asamblea vecinal",
        grace_period_hours=1,
        bonus_points_for_attendee=50,
        bonus_points_for_leader=10,
    )
    leader = Persona(name="Lucía Leader", phone="+525500000001", universe_type=UniverseType.LEADER, is_leader=True)
    militant = Persona(name="Mario Militante", phone="+525500000002", universe_type=UniverseType.PRIVILEGED)
    alice = Persona(name="Alice", phone="+525500000003")
    bob = Persona(name="Bob", phone="+525500000004", universe_type=UniverseType.GROUP_MEMBER)
    carol = Persona(name="Carol", phone="+525500000005")
    db.add_all([event, leader, militant, alice, bob, carol])
    await db.flush()

    issued = await registry.issue_event_codes(db, event)
    await db.commit()

    codes = {qr.type.value: qr.code for qr in issued["codes"]}
    leader_code: QrCode = issued["leader_codes"][0]
    return Seed(
        campaign_id=campaign.id,
        other_campaign_id=other.id,
        event_id=event.id,
        leader_id=leader.id,
        militant_id=militant.id,
        alice_id=alice.id,
        bob_id=bob.id,
        carol_id=carol.id,
        codes=codes,
        leader_code=leader_code.code,
    )


@pytest_asyncio.fixture
async def client(engine: AsyncEngine, queue: FakeQueue) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client on the app, with the task queue replaced by the recorder.

    ASGITransport does not run the lifespan, so Redis stays uninitialized and
    the rate limiter passes every request through.
    """
    from checkpoint.main import create_app

    app = create_app()
    app.dependency_overrides[get_task_queue] = lambda: queue
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
