"""Scan dispatch: one scanned code + event + intended action -> one ledger mutation.

Order of checks:
1. the code exists, is active and not expired (no side effects on failure);
2. the code belongs to the event (or to its campaign for militant codes);
3. the code type allows the requested action;
4. the ledger transition runs, then ``scan_count`` is bumped, and both
   commit together. Any failure rolls the whole scan back.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.attendance import ledger
from checkpoint.attendance.service import find_persona, get_event, resolve_leader
from checkpoint.clock import utcnow
from checkpoint.db.models import AttendanceRecord, AttendanceStatus, Event, QrCode, QrType
from checkpoint.errors import CheckpointError, CodeNotValidForEvent, WrongCodeForAction
from checkpoint.qr import registry

logger = structlog.get_logger()


class ScanAction(str, enum.Enum):
    REGISTER = "register"
    ENTER = "enter"
    EXIT = "exit"


ALLOWED_ACTIONS: dict[QrType, frozenset[ScanAction]] = {
    QrType.REGISTRATION: frozenset({ScanAction.REGISTER}),
    QrType.ENTRY: frozenset({ScanAction.ENTER}),
    QrType.EXIT: frozenset({ScanAction.EXIT}),
    # Presented by a guest at registration or the door; only attributes the leader.
    QrType.LEADER_GUEST: frozenset({ScanAction.REGISTER, ScanAction.ENTER}),
    QrType.MILITANT_FASTTRACK: frozenset({ScanAction.ENTER, ScanAction.EXIT}),
}


@dataclass
class ScanResult:
    """Uniform outcome of a successful scan."""

    action: ScanAction
    qr_type: QrType
    event_id: int
    scan_count: int
    persona_id: int | None = None
    status: AttendanceStatus | None = None
    leader_id: int | None = None
    fast_track: bool = False
    record: dict[str, Any] = field(default_factory=dict)


def check_action(qr: QrCode, action: ScanAction) -> None:
    """Raise WrongCodeForAction if the code type does not serve this scanner."""
    if action not in ALLOWED_ACTIONS[qr.type]:
        raise WrongCodeForAction(
            code=qr.code,
            qr_type=qr.type.value,
            action=action.value,
        )


def check_scope(qr: QrCode, event: Event) -> None:
    """Event codes must match the event; campaign-wide codes must match its campaign."""
    if qr.event_id is not None:
        if qr.event_id != event.id:
            raise CodeNotValidForEvent(code=qr.code, event_id=event.id)
    elif qr.campaign_id != event.campaign_id:
        raise CodeNotValidForEvent(code=qr.code, event_id=event.id)


async def _apply(
    db: AsyncSession,
    qr: QrCode,
    event: Event,
    action: ScanAction,
    persona_id: int | None,
    phone: str | None,
    referring_leader_id: int | None,
    group_id: int | None,
    now: datetime,
) -> tuple[int | None, AttendanceRecord | None]:
    """Run the ledger transition for a validated code. Returns (persona_id, record)."""
    if qr.type is QrType.LEADER_GUEST:
        return None, None

    if qr.type is QrType.MILITANT_FASTTRACK:
        owner_id = qr.owner_persona_id
        if action is ScanAction.ENTER:
            record = await ledger.enter(db, event.id, owner_id, fast_track=True, qr_code_id=qr.id, now=now)
        else:
            record = await ledger.exit(db, event.id, owner_id, qr_code_id=qr.id, now=now)
        return owner_id, record

    persona = await find_persona(db, persona_id, phone)
    if action is ScanAction.REGISTER:
        leader_id = await resolve_leader(db, referring_leader_id, persona.id)
        record = await ledger.register(
            db, event.id, persona.id,
            referring_leader_id=leader_id, group_id=group_id, now=now,
        )
    elif action is ScanAction.ENTER:
        record = await ledger.enter(db, event.id, persona.id, qr_code_id=qr.id, now=now)
    else:
        record = await ledger.exit(db, event.id, persona.id, qr_code_id=qr.id, now=now)
    if (
        action is not ScanAction.REGISTER
        and referring_leader_id is not None
        and referring_leader_id != record.referring_leader_id
    ):
        logger.info(
            "late_leader_attribution_ignored",
            event_id=event.id,
            persona_id=persona.id,
            referring_leader_id=referring_leader_id,
        )
    return persona.id, record


async def route(
    db: AsyncSession,
    code: str,
    event_id: int,
    action: ScanAction,
    persona_id: int | None = None,
    phone: str | None = None,
    referring_leader_id: int | None = None,
    group_id: int | None = None,
    now: datetime | None = None,
) -> ScanResult:
    """Validate, dispatch and commit a single scan."""
    now = now or utcnow()
    try:
        qr = await registry.validate(db, code, now=now)
        event = await get_event(db, event_id)
        check_scope(qr, event)
        check_action(qr, action)

        scanned_persona, record = await _apply(
            db, qr, event, action, persona_id, phone, referring_leader_id, group_id, now,
        )
        scan_count = await registry.consume(db, qr.id)
        await db.commit()
    except CheckpointError as exc:
        await db.rollback()
        logger.info(
            "scan_rejected",
            kind=exc.kind,
            event_id=event_id,
            action=action.value,
        )
        raise

    result = ScanResult(
        action=action,
        qr_type=qr.type,
        event_id=event_id,
        scan_count=scan_count,
        persona_id=scanned_persona,
        leader_id=qr.owner_persona_id if qr.type is QrType.LEADER_GUEST else None,
    )
    if record is not None:
        result.status = record.status
        result.fast_track = record.fast_track
        result.record = ledger.snapshot(record)

    logger.info(
        "scan_accepted",
        event_id=event_id,
        qr_type=qr.type.value,
        action=action.value,
        persona_id=result.persona_id,
        status=result.status.value if result.status else None,
    )
    return result
