"""QR code registry: issuance, validation and scan counting.

Codes are ``<PREFIX>-<scope>-<token>`` where the token is drawn from A-Z/0-9
with a cryptographic random source. Users cannot choose their own codes.
"""

from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.clock import utcnow
from checkpoint.config import get_settings
from checkpoint.db.models import Event, Persona, QrCode, QrType
from checkpoint.errors import CodeCollisionError, QrExpired, QrInactive, QrNotFound

logger = logging.getLogger(__name__)

CODE_CHARSET = string.ascii_uppercase + string.digits  # A-Z, 0-9

CODE_PREFIXES: dict[QrType, str] = {
    QrType.REGISTRATION: "QR1",
    QrType.ENTRY: "QR2",
    QrType.EXIT: "QR3",
    QrType.LEADER_GUEST: "QR2L",
    QrType.MILITANT_FASTTRACK: "QRM",
}

# One shared code per event for each of these types.
EVENT_CODE_TYPES = (QrType.REGISTRATION, QrType.ENTRY, QrType.EXIT)


def generate_token(length: int | None = None) -> str:
    """Generate a cryptographically random token from A-Z0-9."""
    length = length or get_settings().qr_token_length
    return "".join(secrets.choice(CODE_CHARSET) for _ in range(length))


def build_code(
    qr_type: QrType,
    campaign_id: int,
    event_id: int | None = None,
    owner_persona_id: int | None = None,
    token: str | None = None,
) -> str:
    """Compose a human-scannable code string. Only the token carries entropy."""
    parts = [CODE_PREFIXES[qr_type], f"C{campaign_id}"]
    if event_id is not None:
        parts.append(f"E{event_id}")
    if owner_persona_id is not None:
        parts.append(f"P{owner_persona_id}")
    parts.append(token or generate_token())
    return "-".join(parts)


def normalize_code(code: str) -> str:
    """Normalize a scanned code (scanners may add whitespace or lowercase)."""
    return code.strip().upper()


async def get_by_code(db: AsyncSession, code: str) -> QrCode | None:
    result = await db.execute(select(QrCode).where(QrCode.code == normalize_code(code)))
    return result.scalar_one_or_none()


async def validate(db: AsyncSession, code: str, now: datetime | None = None) -> QrCode:
    """Look up a code by exact match and check it is usable. Read-only.

    Raises QrNotFound, QrInactive or QrExpired.
    """
    qr = await get_by_code(db, code)
    if qr is None:
        raise QrNotFound(code=normalize_code(code))
    if not qr.active:
        raise QrInactive(code=qr.code)
    now = now or utcnow()
    if qr.expires_at is not None and qr.expires_at <= now:
        raise QrExpired(code=qr.code, expires_at=qr.expires_at.isoformat())
    return qr


async def consume(db: AsyncSession, qr_id: int) -> int:
    """Atomically bump ``scan_count`` and return the new value.

    Called after the scan handler's mutation, inside the same transaction.
    The counter is informational; it never gates entry.
    """
    await db.execute(
        update(QrCode)
        .where(QrCode.id == qr_id)
        .values(scan_count=QrCode.scan_count + 1)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(select(QrCode.scan_count).where(QrCode.id == qr_id))
    return int(result.scalar_one())


async def _code_exists(db: AsyncSession, code: str) -> bool:
    existing = await db.execute(select(QrCode.id).where(QrCode.code == code))
    return existing.scalar_one_or_none() is not None


async def issue(
    db: AsyncSession,
    qr_type: QrType,
    campaign_id: int,
    event_id: int | None = None,
    owner_persona_id: int | None = None,
    expires_at: datetime | None = None,
) -> QrCode:
    """Create a new active code unique across the whole table.

    Flushes but does not commit; the caller owns the transaction.
    """
    if qr_type is QrType.LEADER_GUEST and owner_persona_id is None:
        raise ValueError("LEADER_GUEST codes must be bound to a leader")
    if qr_type is QrType.MILITANT_FASTTRACK and (event_id is not None or owner_persona_id is None):
        raise ValueError("MILITANT_FASTTRACK codes are campaign-wide and bound to a persona")

    attempts = get_settings().qr_issue_attempts
    for _ in range(attempts):
        code = build_code(qr_type, campaign_id, event_id, owner_persona_id)
        if not await _code_exists(db, code):
            break
    else:
        logger.error(
            "QR code collision retries exhausted (type=%s, campaign=%s, event=%s, attempts=%d)",
            qr_type.value, campaign_id, event_id, attempts,
        )
        raise CodeCollisionError(attempts=attempts)

    qr = QrCode(
        campaign_id=campaign_id,
        event_id=event_id,
        type=qr_type,
        code=code,
        owner_persona_id=owner_persona_id,
        active=True,
        expires_at=expires_at,
        scan_count=0,
        created_at=utcnow(),
    )
    db.add(qr)
    await db.flush()
    return qr


async def get_code(db: AsyncSession, qr_id: int) -> QrCode:
    qr = await db.get(QrCode, qr_id)
    if qr is None:
        raise QrNotFound(qr_id=qr_id)
    return qr


async def deactivate(db: AsyncSession, qr_id: int) -> QrCode:
    """Admin action: a deactivated code is rejected by every scanner."""
    qr = await get_code(db, qr_id)
    if qr.active:
        qr.active = False
        qr.deactivated_at = utcnow()
        await db.flush()
    return qr


async def regenerate(db: AsyncSession, qr_id: int) -> QrCode:
    """Deactivate a lost/compromised code and issue a replacement.

    The replacement keeps the type, owner, event and campaign of the old one.
    """
    old = await deactivate(db, qr_id)
    replacement = await issue(
        db,
        old.type,
        old.campaign_id,
        event_id=old.event_id,
        owner_persona_id=old.owner_persona_id,
        expires_at=old.expires_at,
    )
    logger.info("Regenerated QR code %d -> %d (type=%s)", old.id, replacement.id, old.type.value)
    return replacement


async def list_event_codes(db: AsyncSession, event_id: int, include_inactive: bool = False) -> list[QrCode]:
    query = select(QrCode).where(QrCode.event_id == event_id)
    if not include_inactive:
        query = query.where(QrCode.active.is_(True))
    result = await db.execute(query.order_by(QrCode.type, QrCode.id))
    return list(result.scalars().all())


async def issue_event_codes(db: AsyncSession, event: Event) -> dict[str, object]:
    """Ensure an event has its REGISTRATION/ENTRY/EXIT codes and one LEADER_GUEST code per leader.

    Existing active codes are kept, so calling this twice is harmless.
    """
    existing = await list_event_codes(db, event.id)
    shared: dict[QrType, QrCode] = {}
    leader_codes: dict[int, QrCode] = {}
    for qr in existing:
        if qr.type in EVENT_CODE_TYPES:
            shared.setdefault(qr.type, qr)
        elif qr.type is QrType.LEADER_GUEST and qr.owner_persona_id is not None:
            leader_codes.setdefault(qr.owner_persona_id, qr)

    created = 0
    for qr_type in EVENT_CODE_TYPES:
        if qr_type not in shared:
            shared[qr_type] = await issue(db, qr_type, event.campaign_id, event_id=event.id)
            created += 1

    leaders = await db.execute(select(Persona.id).where(Persona.is_leader.is_(True)).order_by(Persona.id))
    for leader_id in leaders.scalars().all():
        if leader_id not in leader_codes:
            leader_codes[leader_id] = await issue(
                db, QrType.LEADER_GUEST, event.campaign_id, event_id=event.id, owner_persona_id=leader_id
            )
            created += 1

    if created:
        logger.info("Issued %d QR codes for event %d", created, event.id)

    return {
        "created": created,
        "codes": list(shared.values()),
        "leader_codes": list(leader_codes.values()),
    }
