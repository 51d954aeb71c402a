"""Event points distribution: attendee points plus leader referral bonuses.

One run per event, in one transaction:
1. claim the event (compare-and-swap ``points_distributed`` false -> true);
2. award every COMPLETED, unsettled attendee and mark the record settled;
3. group the same attendees by referring leader and award
   ``guest_count * bonus_points_for_leader`` to each leader.

The claim row lock serializes concurrent runs for the same event: the second
caller waits for the first to commit, then matches zero rows and gets
AlreadyDistributed. Any exception rolls back every award and the claim.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.clock import utcnow
from checkpoint.config import get_settings
from checkpoint.db.models import (
    AttendanceRecord,
    AttendanceStatus,
    Event,
    Persona,
    PointHistory,
    PointKind,
    UniverseType,
)
from checkpoint.errors import AlreadyDistributed, CheckpointError, EventNotEnded, EventNotFound
from checkpoint.notifications import notify_in_background
from checkpoint.points.balance import increment_balance, record_history

logger = logging.getLogger(__name__)


@dataclass
class LeaderBonus:
    leader_id: int
    guest_count: int
    points: int
    guest_ids: list[int] = field(default_factory=list)


@dataclass
class DistributionResult:
    event_id: int
    attendees_count: int = 0
    attendee_points_total: int = 0
    leader_points_total: int = 0
    leaders: list[LeaderBonus] = field(default_factory=list)
    forced: bool = False
    reversed_points: int = 0

    @property
    def total_points(self) -> int:
        return self.attendee_points_total + self.leader_points_total

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["total_points"] = self.total_points
        return data


def round_half_up(value: Decimal) -> int:
    """Round to the nearest integer, halves away from zero (2.5 -> 3)."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def weighted_points(base: int, universe: UniverseType, multipliers: dict[str, float] | None = None) -> int:
    """Attendee points after the optional per-universe multiplier.

    With no multiplier configured for ``universe`` the base is returned as is.
    """
    multipliers = get_settings().universe_point_multipliers if multipliers is None else multipliers
    factor = multipliers.get(universe.value)
    if factor is None:
        return base
    return round_half_up(Decimal(base) * Decimal(str(factor)))


async def _claim(db: AsyncSession, event_id: int) -> bool:
    result = await db.execute(
        update(Event)
        .where(Event.id == event_id, Event.points_distributed.is_(False))
        .values(points_distributed=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def reset_event_points(db: AsyncSession, event_id: int) -> int:
    """Undo a previous run: reverse balances, drop history, unsettle records.

    Returns the number of points taken back. Flushes, never commits.
    """
    # Taking the row lock first serializes concurrent forced runs.
    await db.execute(
        update(Event)
        .where(Event.id == event_id)
        .values(points_distributed=False)
        .execution_options(synchronize_session=False)
    )

    sums = await db.execute(
        select(PointHistory.persona_id, func.sum(PointHistory.amount))
        .where(PointHistory.event_id == event_id)
        .group_by(PointHistory.persona_id)
        .order_by(PointHistory.persona_id)
    )
    reversed_points = 0
    for persona_id, amount in sums.all():
        amount = int(amount or 0)
        if amount:
            await increment_balance(db, persona_id, -amount)
            reversed_points += amount

    await db.execute(
        delete(PointHistory)
        .where(PointHistory.event_id == event_id)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        update(AttendanceRecord)
        .where(AttendanceRecord.event_id == event_id)
        .values(points_awarded=0, points_settled=False)
        .execution_options(synchronize_session=False)
    )
    logger.info("Reset points for event %d (%d points reversed)", event_id, reversed_points)
    return reversed_points


async def _award_attendees(
    db: AsyncSession,
    event: Event,
    result: DistributionResult,
) -> list[AttendanceRecord]:
    rows = await db.execute(
        select(AttendanceRecord, Persona.universe_type)
        .join(Persona, Persona.id == AttendanceRecord.persona_id)
        .where(
            AttendanceRecord.event_id == event.id,
            AttendanceRecord.status == AttendanceStatus.COMPLETED,
            AttendanceRecord.points_settled.is_(False),
        )
        .order_by(AttendanceRecord.persona_id)
        .execution_options(populate_existing=True)
    )
    settled = []
    for record, universe in rows.all():
        points = weighted_points(event.bonus_points_for_attendee, universe)
        await increment_balance(db, record.persona_id, points)
        await record_history(
            db,
            record.persona_id,
            event.id,
            PointKind.ATTENDANCE,
            points,
            metadata={"base_points": event.bonus_points_for_attendee, "universe_type": universe.value},
            description=f"Attended event: {event.name}",
        )
        record.points_awarded = points
        record.points_settled = True
        result.attendees_count += 1
        result.attendee_points_total += points
        settled.append(record)
    await db.flush()
    return settled


async def _award_leaders(
    db: AsyncSession,
    event: Event,
    settled: list[AttendanceRecord],
    result: DistributionResult,
) -> None:
    guests: dict[int, list[int]] = defaultdict(list)
    for record in settled:
        if record.referring_leader_id is not None:
            guests[record.referring_leader_id].append(record.persona_id)

    per_guest = event.bonus_points_for_leader
    for leader_id in sorted(guests):
        guest_ids = guests[leader_id]
        bonus = len(guest_ids) * per_guest
        await increment_balance(db, leader_id, bonus)
        await record_history(
            db,
            leader_id,
            event.id,
            PointKind.LEADER_BONUS,
            bonus,
            metadata={
                "guest_count": len(guest_ids),
                "points_per_guest": per_guest,
                "guest_ids": guest_ids,
            },
            description=f"Leader bonus: {len(guest_ids)} guests attended (x{per_guest} pts/guest)",
        )
        result.leaders.append(LeaderBonus(leader_id, len(guest_ids), bonus, guest_ids))
        result.leader_points_total += bonus
        logger.info(
            "Leader %d earned %d points for %d guests at event %d",
            leader_id, bonus, len(guest_ids), event.id,
        )


async def distribute(
    db: AsyncSession,
    event_id: int,
    force: bool = False,
    now: datetime | None = None,
) -> DistributionResult:
    """Award attendee and leader points for an ended event. Commits.

    Raises AlreadyDistributed on a second run unless ``force`` is set, in
    which case the previous run is reversed first and the event is
    recomputed from scratch. Forced runs are repeatable with the same result.
    """
    now = now or utcnow()
    event = await db.get(Event, event_id, populate_existing=True)
    if event is None:
        raise EventNotFound(event_id=event_id)
    if event.ended_at is None or event.ended_at > now:
        raise EventNotEnded(event_id=event_id)

    result = DistributionResult(event_id=event_id, forced=force)
    try:
        if force:
            result.reversed_points = await reset_event_points(db, event_id)
        if not await _claim(db, event_id):
            raise AlreadyDistributed(event_id=event_id)

        settled = await _award_attendees(db, event, result)
        await _award_leaders(db, event, settled, result)
        await db.commit()
    except CheckpointError:
        await db.rollback()
        raise
    except Exception:
        await db.rollback()
        logger.error("Points distribution failed for event %d", event_id, exc_info=True)
        raise

    logger.info(
        "Distributed points for event %d: %d attendees, %d attendee points, %d leader points%s",
        event_id,
        result.attendees_count,
        result.attendee_points_total,
        result.leader_points_total,
        " (forced)" if force else "",
    )
    notify_in_background("points.distributed", result.to_dict())
    return result
