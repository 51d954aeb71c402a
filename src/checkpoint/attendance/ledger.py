"""Attendance ledger: the per (event, persona) state machine.

State progression: NONE -> REGISTERED -> ENTERED -> COMPLETED
Fast-track entry goes NONE -> ENTERED in one step (record created already entered).

Every transition is a single compare-and-swap UPDATE guarded on the current
status, so two concurrent scans of the same code for the same action cannot
both succeed: the loser matches zero rows and gets the "already done" error.
Record creation relies on the (event_id, persona_id) unique constraint.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.clock import utcnow
from checkpoint.db.models import AttendanceRecord, AttendanceStatus
from checkpoint.errors import (
    AlreadyEntered,
    AlreadyExited,
    AlreadyRegistered,
    AttendanceIntegrityError,
    NotEntered,
    NotRegistered,
)

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[AttendanceStatus, list[AttendanceStatus]] = {
    AttendanceStatus.NONE: [AttendanceStatus.REGISTERED, AttendanceStatus.ENTERED],
    AttendanceStatus.REGISTERED: [AttendanceStatus.ENTERED],
    AttendanceStatus.ENTERED: [AttendanceStatus.COMPLETED],
    AttendanceStatus.COMPLETED: [],
}


def validate_transition(current: AttendanceStatus, target: AttendanceStatus, fast_track: bool = False) -> None:
    """Validate a state transition. Raises ValueError if invalid.

    NONE -> ENTERED is only legal for fast-track entries.
    """
    valid = VALID_TRANSITIONS.get(current, [])
    if target not in valid:
        raise ValueError(
            f"Invalid transition: {current.value} -> {target.value}. "
            f"Valid transitions: {[s.value for s in valid]}"
        )
    if current is AttendanceStatus.NONE and target is AttendanceStatus.ENTERED and not fast_track:
        raise ValueError("Invalid transition: NONE -> ENTERED requires fast-track")


def allowed_next(current: AttendanceStatus, fast_track: bool = False) -> list[AttendanceStatus]:
    """States reachable from ``current`` in one step."""
    allowed = []
    for target in VALID_TRANSITIONS.get(current, []):
        try:
            validate_transition(current, target, fast_track=fast_track)
        except ValueError:
            continue
        allowed.append(target)
    return allowed


def check_invariants(record: AttendanceRecord) -> None:
    """Raise AttendanceIntegrityError if timestamps and status disagree."""
    problems = []
    if record.entered_at is not None and record.status.rank < AttendanceStatus.ENTERED.rank:
        problems.append("entered_at set but status < ENTERED")
    if record.exited_at is not None:
        if record.entered_at is None:
            problems.append("exited_at set without entered_at")
        elif record.exited_at < record.entered_at:
            problems.append("exited_at before entered_at")
        if record.status is not AttendanceStatus.COMPLETED:
            problems.append("exited_at set but status != COMPLETED")
    if record.status is AttendanceStatus.ENTERED and record.entered_at is None:
        problems.append("status ENTERED without entered_at")
    if problems:
        logger.error(
            "Attendance record %s (event=%s, persona=%s) in impossible state: %s",
            record.id, record.event_id, record.persona_id, "; ".join(problems),
        )
        raise AttendanceIntegrityError(
            event_id=record.event_id,
            persona_id=record.persona_id,
            problems=problems,
        )


def snapshot(record: AttendanceRecord) -> dict[str, object]:
    """Serializable view of a record, attached to "already done" errors."""
    return {
        "event_id": record.event_id,
        "persona_id": record.persona_id,
        "status": record.status.value,
        "registered_at": record.registered_at.isoformat() if record.registered_at else None,
        "entered_at": record.entered_at.isoformat() if record.entered_at else None,
        "exited_at": record.exited_at.isoformat() if record.exited_at else None,
    }


async def get_record(db: AsyncSession, event_id: int, persona_id: int) -> AttendanceRecord | None:
    """Fetch the record, bypassing stale identity-map state."""
    result = await db.execute(
        select(AttendanceRecord)
        .where(
            AttendanceRecord.event_id == event_id,
            AttendanceRecord.persona_id == persona_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def status_of(record: AttendanceRecord | None) -> AttendanceStatus:
    return AttendanceStatus.NONE if record is None else record.status


async def _compare_and_swap(
    db: AsyncSession,
    event_id: int,
    persona_id: int,
    expected: AttendanceStatus,
    **values: object,
) -> bool:
    """UPDATE ... WHERE status = expected. Returns True if this caller won the row."""
    result = await db.execute(
        update(AttendanceRecord)
        .where(
            AttendanceRecord.event_id == event_id,
            AttendanceRecord.persona_id == persona_id,
            AttendanceRecord.status == expected,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _is_duplicate_record(exc: IntegrityError) -> bool:
    """True for the (event_id, persona_id) unique key; False for foreign keys and checks."""
    message = str(exc.orig)
    return "uq_attendance_event_persona" in message or "UNIQUE constraint failed: attendance_records" in message


async def _insert(db: AsyncSession, record: AttendanceRecord) -> bool:
    """Insert a new record. Returns False if another writer created it first.

    After a False return the transaction is unusable and must be rolled back.
    Other integrity errors propagate.
    """
    db.add(record)
    try:
        await db.flush()
    except IntegrityError as exc:
        if not _is_duplicate_record(exc):
            raise
        return False
    return True


async def register(
    db: AsyncSession,
    event_id: int,
    persona_id: int,
    referring_leader_id: int | None = None,
    group_id: int | None = None,
    now: datetime | None = None,
) -> AttendanceRecord:
    """NONE -> REGISTERED. Leader attribution is fixed here and never changes."""
    existing = await get_record(db, event_id, persona_id)
    if existing is not None:
        raise AlreadyRegistered(record=snapshot(existing))

    now = now or utcnow()
    record = AttendanceRecord(
        event_id=event_id,
        persona_id=persona_id,
        referring_leader_id=referring_leader_id,
        group_id=group_id,
        status=AttendanceStatus.REGISTERED,
        registered_at=now,
    )
    if not await _insert(db, record):
        raise AlreadyRegistered(event_id=event_id, persona_id=persona_id)
    return record


async def enter(
    db: AsyncSession,
    event_id: int,
    persona_id: int,
    fast_track: bool = False,
    qr_code_id: int | None = None,
    now: datetime | None = None,
) -> AttendanceRecord:
    """REGISTERED -> ENTERED, or NONE -> ENTERED for fast-track codes."""
    now = now or utcnow()
    won = await _compare_and_swap(
        db, event_id, persona_id, AttendanceStatus.REGISTERED,
        status=AttendanceStatus.ENTERED,
        entered_at=now,
        entry_qr_code_id=qr_code_id,
    )
    record = await get_record(db, event_id, persona_id)
    if won and record is not None:
        check_invariants(record)
        return record

    current = status_of(record)
    if current is AttendanceStatus.NONE:
        if not fast_track:
            raise NotRegistered(event_id=event_id, persona_id=persona_id)
        record = AttendanceRecord(
            event_id=event_id,
            persona_id=persona_id,
            status=AttendanceStatus.ENTERED,
            registered_at=now,
            entered_at=now,
            fast_track=True,
            entry_qr_code_id=qr_code_id,
        )
        if not await _insert(db, record):
            raise AlreadyEntered(event_id=event_id, persona_id=persona_id)
        return record

    if current in (AttendanceStatus.ENTERED, AttendanceStatus.COMPLETED):
        raise AlreadyEntered(record=snapshot(record))  # type: ignore[arg-type]

    # REGISTERED but the swap matched nothing: the row changed under us.
    logger.error(
        "Entry compare-and-swap lost on a REGISTERED record (event=%s, persona=%s)",
        event_id, persona_id,
    )
    raise AttendanceIntegrityError(event_id=event_id, persona_id=persona_id)


async def exit(  # noqa: A001
    db: AsyncSession,
    event_id: int,
    persona_id: int,
    qr_code_id: int | None = None,
    now: datetime | None = None,
) -> AttendanceRecord:
    """ENTERED -> COMPLETED."""
    now = now or utcnow()
    won = await _compare_and_swap(
        db, event_id, persona_id, AttendanceStatus.ENTERED,
        status=AttendanceStatus.COMPLETED,
        exit_qr_code_id=qr_code_id,
    )
    record = await get_record(db, event_id, persona_id)
    if won and record is not None:
        # The swap claimed the row; stamp the exit no earlier than the entry.
        record.exited_at = max(now, record.entered_at) if record.entered_at else now
        await db.flush()
        check_invariants(record)
        return record

    current = status_of(record)
    if current is AttendanceStatus.COMPLETED:
        raise AlreadyExited(record=snapshot(record))  # type: ignore[arg-type]
    if current in (AttendanceStatus.NONE, AttendanceStatus.REGISTERED):
        raise NotEntered(event_id=event_id, persona_id=persona_id, status=current.value)

    logger.error(
        "Exit compare-and-swap lost on an ENTERED record (event=%s, persona=%s)",
        event_id, persona_id,
    )
    raise AttendanceIntegrityError(event_id=event_id, persona_id=persona_id)


async def force_complete(
    db: AsyncSession,
    event_id: int,
    persona_id: int,
    at: datetime,
) -> bool:
    """System close: ENTERED -> COMPLETED with ``exited_at = at``.

    No-op (returns False) if the persona never entered or already exited.
    """
    record = await get_record(db, event_id, persona_id)
    if record is None or record.status is not AttendanceStatus.ENTERED:
        return False
    exited_at = max(at, record.entered_at) if record.entered_at else at
    won = await _compare_and_swap(
        db, event_id, persona_id, AttendanceStatus.ENTERED,
        status=AttendanceStatus.COMPLETED,
        exited_at=exited_at,
        closed_by_system=True,
    )
    return won


async def force_complete_open(db: AsyncSession, event_id: int, at: datetime) -> int:
    """Close every ENTERED-but-not-exited record of an event. Returns how many were closed."""
    result = await db.execute(
        select(AttendanceRecord.persona_id)
        .where(
            AttendanceRecord.event_id == event_id,
            AttendanceRecord.status == AttendanceStatus.ENTERED,
            AttendanceRecord.exited_at.is_(None),
        )
        .order_by(AttendanceRecord.persona_id)
    )
    closed = 0
    for persona_id in result.scalars().all():
        if await force_complete(db, event_id, persona_id, at):
            closed += 1
    return closed
