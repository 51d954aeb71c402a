"""Identity lookup and staff-assisted (manual) check-in/check-out."""

from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.attendance import ledger
from checkpoint.clock import utcnow
from checkpoint.db.models import AttendanceRecord, Event, Persona
from checkpoint.errors import (
    CheckpointError,
    EventInactive,
    EventNotFound,
    IdentityRequired,
    PersonaNotFound,
    SelfReferral,
)

logger = structlog.get_logger()


def normalize_phone(phone: str) -> str:
    """Keep digits and a leading '+' only."""
    phone = phone.strip()
    digits = "".join(ch for ch in phone if ch.isdigit())
    return f"+{digits}" if phone.startswith("+") else digits


async def find_persona(db: AsyncSession, persona_id: int | None = None, phone: str | None = None) -> Persona:
    """Resolve a persona by id or phone number. Raises PersonaNotFound."""
    if persona_id is None and not phone:
        raise IdentityRequired()
    if persona_id is not None:
        persona = await db.get(Persona, persona_id)
    else:
        result = await db.execute(select(Persona).where(Persona.phone == normalize_phone(phone or "")))
        persona = result.scalar_one_or_none()
    if persona is None:
        raise PersonaNotFound(persona_id=persona_id, phone=phone)
    return persona


async def resolve_leader(db: AsyncSession, leader_id: int | None, persona_id: int) -> int | None:
    """Check a referring leader named by the client before it is stored.

    Raises PersonaNotFound for an unknown id and SelfReferral when the persona
    names itself.
    """
    if leader_id is None:
        return None
    if leader_id == persona_id:
        raise SelfReferral(persona_id=persona_id)
    if await db.get(Persona, leader_id) is None:
        raise PersonaNotFound(referring_leader_id=leader_id)
    return leader_id


async def get_event(db: AsyncSession, event_id: int, require_active: bool = True) -> Event:
    event = await db.get(Event, event_id)
    if event is None:
        raise EventNotFound(event_id=event_id)
    if require_active and not event.active:
        raise EventInactive(event_id=event_id)
    return event


async def manual_check_in(
    db: AsyncSession,
    event_id: int,
    persona_id: int | None = None,
    phone: str | None = None,
    referring_leader_id: int | None = None,
    group_id: int | None = None,
    now: datetime | None = None,
) -> AttendanceRecord:
    """Check a persona in without a personal QR.

    A persona without a record is registered on-site first (leader attribution
    applies only then) and entered in the same transaction. A leader passed
    for an already-registered persona is ignored: attribution is immutable.
    """
    now = now or utcnow()
    await get_event(db, event_id)
    persona = await find_persona(db, persona_id, phone)
    try:
        record = await ledger.get_record(db, event_id, persona.id)
        if record is None:
            leader_id = await resolve_leader(db, referring_leader_id, persona.id)
            await ledger.register(
                db, event_id, persona.id,
                referring_leader_id=leader_id, group_id=group_id, now=now,
            )
        elif referring_leader_id is not None and record.referring_leader_id != referring_leader_id:
            logger.info(
                "late_leader_attribution_ignored",
                event_id=event_id,
                persona_id=persona.id,
                requested_leader_id=referring_leader_id,
                leader_id=record.referring_leader_id,
            )
        record = await ledger.enter(db, event_id, persona.id, now=now)
        await db.commit()
    except CheckpointError:
        await db.rollback()
        raise

    logger.info("manual_check_in", event_id=event_id, persona_id=persona.id)
    return record


async def manual_check_out(
    db: AsyncSession,
    event_id: int,
    persona_id: int | None = None,
    phone: str | None = None,
    now: datetime | None = None,
) -> AttendanceRecord:
    """Check a persona out without a QR code."""
    await get_event(db, event_id)
    persona = await find_persona(db, persona_id, phone)
    try:
        record = await ledger.exit(db, event_id, persona.id, now=now)
        await db.commit()
    except CheckpointError:
        await db.rollback()
        raise

    logger.info(
        "manual_check_out",
        event_id=event_id,
        persona_id=persona.id,
        duration_minutes=record.duration_minutes,
    )
    return record


async def attendance_status(db: AsyncSession, event_id: int, persona_id: int) -> dict[str, object]:
    """Current lifecycle state of a persona for an event."""
    record = await ledger.get_record(db, event_id, persona_id)
    status = ledger.status_of(record)
    return {
        "event_id": event_id,
        "persona_id": persona_id,
        "status": status,
        "registered_at": record.registered_at if record else None,
        "entered_at": record.entered_at if record else None,
        "exited_at": record.exited_at if record else None,
        "duration_minutes": record.duration_minutes if record else None,
        "fast_track": record.fast_track if record else False,
        "closed_by_system": record.closed_by_system if record else False,
        "referring_leader_id": record.referring_leader_id if record else None,
        "next_actions": ledger.allowed_next(status),
    }

