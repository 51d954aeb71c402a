"""Read-only leader views: bonus preview for an event and lifetime stats."""

from __future__ import annotations

from typing import Any

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.db.models import AttendanceRecord, AttendanceStatus, Event, Persona, PointHistory, PointKind
from checkpoint.errors import EventNotFound, PersonaNotFound


async def _get_leader(db: AsyncSession, leader_id: int) -> Persona:
    leader = await db.get(Persona, leader_id, populate_existing=True)
    if leader is None:
        raise PersonaNotFound(persona_id=leader_id)
    return leader


async def bonus_preview(db: AsyncSession, leader_id: int, event_id: int) -> dict[str, Any]:
    """What the leader would earn for an event right now. Awards nothing."""
    leader = await _get_leader(db, leader_id)
    event = await db.get(Event, event_id, populate_existing=True)
    if event is None:
        raise EventNotFound(event_id=event_id)

    result = await db.execute(
        select(func.count(AttendanceRecord.id)).where(
            AttendanceRecord.event_id == event_id,
            AttendanceRecord.referring_leader_id == leader_id,
            AttendanceRecord.status == AttendanceStatus.COMPLETED,
        )
    )
    guest_count = int(result.scalar_one())
    return {
        "leader_id": leader.id,
        "leader_name": leader.name,
        "event_id": event.id,
        "guests_attended": guest_count,
        "points_per_guest": event.bonus_points_for_leader,
        "total_bonus": guest_count * event.bonus_points_for_leader,
        "points_distributed": event.points_distributed,
    }


async def leader_stats(db: AsyncSession, leader_id: int, recent_limit: int = 10) -> dict[str, Any]:
    """Lifetime referral performance of a leader."""
    leader = await _get_leader(db, leader_id)

    completed = (
        AttendanceRecord.referring_leader_id == leader_id,
        AttendanceRecord.status == AttendanceStatus.COMPLETED,
    )
    total_guests = (await db.execute(select(func.count(AttendanceRecord.id)).where(*completed))).scalar_one()
    events_with_guests = (
        await db.execute(select(func.count(distinct(AttendanceRecord.event_id))).where(*completed))
    ).scalar_one()
    total_bonus = (
        await db.execute(
            select(func.coalesce(func.sum(PointHistory.amount), 0)).where(
                PointHistory.persona_id == leader_id,
                PointHistory.kind == PointKind.LEADER_BONUS,
            )
        )
    ).scalar_one()

    recent = await db.execute(
        select(PointHistory, Event.name)
        .outerjoin(Event, Event.id == PointHistory.event_id)
        .where(
            PointHistory.persona_id == leader_id,
            PointHistory.kind == PointKind.LEADER_BONUS,
        )
        .order_by(PointHistory.created_at.desc(), PointHistory.id.desc())
        .limit(recent_limit)
    )

    return {
        "leader_id": leader.id,
        "leader_name": leader.name,
        "total_guests_invited": int(total_guests),
        "total_bonus_points_earned": int(total_bonus),
        "events_participated": int(events_with_guests),
        "current_loyalty_balance": leader.loyalty_balance,
        "recent_bonuses": [
            {
                "event_id": entry.event_id,
                "event_name": event_name or "Unknown",
                "points": entry.amount,
                "guests_count": int(entry.details.get("guest_count", 0)),
                "date": entry.created_at,
            }
            for entry, event_name in recent.all()
        ],
    }
