"""Militant fast-track codes: one persistent code per privileged persona per campaign.

The code is campaign-wide (``event_id`` NULL) and valid at every event of the
campaign. Scanning it enters the owner without a prior registration.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.clock import to_utc_z, utcnow
from checkpoint.db.models import Campaign, Persona, QrCode, QrType, UniverseType
from checkpoint.errors import CampaignNotFound, NotPrivileged, PersonaNotFound
from checkpoint.notifications import notify
from checkpoint.qr import registry

logger = logging.getLogger(__name__)


async def get_campaign(db: AsyncSession, campaign_id: int) -> Campaign:
    campaign = await db.get(Campaign, campaign_id)
    if campaign is None:
        raise CampaignNotFound(campaign_id=campaign_id)
    return campaign


async def list_campaign_codes(db: AsyncSession, campaign_id: int, include_inactive: bool = False) -> list[QrCode]:
    query = select(QrCode).where(
        QrCode.campaign_id == campaign_id,
        QrCode.type == QrType.MILITANT_FASTTRACK,
        QrCode.event_id.is_(None),
    )
    if not include_inactive:
        query = query.where(QrCode.active.is_(True))
    result = await db.execute(query.order_by(QrCode.owner_persona_id))
    return list(result.scalars().all())


async def _active_code(db: AsyncSession, campaign_id: int, persona_id: int) -> QrCode | None:
    result = await db.execute(
        select(QrCode).where(
            QrCode.campaign_id == campaign_id,
            QrCode.owner_persona_id == persona_id,
            QrCode.type == QrType.MILITANT_FASTTRACK,
            QrCode.event_id.is_(None),
            QrCode.active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def issue_for_campaign(db: AsyncSession, campaign_id: int) -> dict[str, Any]:
    """Ensure every privileged (U4) persona has exactly one live code. Commits.

    Existing codes are kept as they are; only missing ones are created.
    """
    campaign = await get_campaign(db, campaign_id)
    militants = await db.execute(
        select(Persona.id).where(Persona.universe_type == UniverseType.PRIVILEGED).order_by(Persona.id)
    )

    created = 0
    existing = 0
    codes: list[QrCode] = []
    for persona_id in militants.scalars().all():
        qr = await _active_code(db, campaign.id, persona_id)
        if qr is not None:
            existing += 1
        else:
            qr = await registry.issue(db, QrType.MILITANT_FASTTRACK, campaign.id, owner_persona_id=persona_id)
            created += 1
        codes.append(qr)
    await db.commit()

    logger.info(
        "Militant codes for campaign %d: %d created, %d already existed",
        campaign.id, created, existing,
    )
    return {"campaign_id": campaign.id, "created": created, "existing": existing, "codes": codes}


async def regenerate(db: AsyncSession, campaign_id: int, persona_id: int) -> QrCode:
    """Replace a militant's lost code (or issue one if they never had it). Commits."""
    campaign = await get_campaign(db, campaign_id)
    persona = await db.get(Persona, persona_id)
    if persona is None:
        raise PersonaNotFound(persona_id=persona_id)
    if persona.universe_type is not UniverseType.PRIVILEGED:
        raise NotPrivileged(persona_id=persona_id, universe_type=persona.universe_type.value)

    current = await _active_code(db, campaign.id, persona.id)
    if current is None:
        qr = await registry.issue(db, QrType.MILITANT_FASTTRACK, campaign.id, owner_persona_id=persona.id)
    else:
        qr = await registry.regenerate(db, current.id)
    await db.commit()
    return qr


def build_message(campaign: Campaign, persona: Persona, qr: QrCode) -> str:
    """WhatsApp text sent with the code by the notification workflow."""
    return (
        f"¡Hola {persona.name}!\n\n"
        f"Tu código QR personalizado para la campaña *{campaign.name}* está listo.\n\n"
        "*Acceso rápido*: sin registro en sitio, válido para todos los eventos.\n\n"
        f"Código: `{qr.code}`\n\n"
        "Preséntalo en la entrada de cualquier evento de esta campaña."
    )


async def distribute_codes(db: AsyncSession, campaign_id: int) -> dict[str, Any]:
    """Send every live militant code of a campaign to the notification webhook.

    Personas without a phone number are skipped and reported. A webhook
    failure is reported in the stats, never raised.
    """
    campaign = await get_campaign(db, campaign_id)
    rows = await db.execute(
        select(QrCode, Persona)
        .join(Persona, Persona.id == QrCode.owner_persona_id)
        .where(
            QrCode.campaign_id == campaign.id,
            QrCode.type == QrType.MILITANT_FASTTRACK,
            QrCode.event_id.is_(None),
            QrCode.active.is_(True),
        )
        .order_by(QrCode.owner_persona_id)
    )

    stats: dict[str, Any] = {"total_codes": 0, "prepared": 0, "skipped": 0, "delivered": False, "errors": []}
    notifications = []
    for qr, persona in rows.all():
        stats["total_codes"] += 1
        if not persona.phone:
            stats["skipped"] += 1
            stats["errors"].append(f"Persona {persona.id} has no phone number")
            continue
        notifications.append({
            "qr_code_id": qr.id,
            "qr_code": qr.code,
            "persona_id": persona.id,
            "persona_name": persona.name,
            "phone_number": persona.phone,
            "message": build_message(campaign, persona, qr),
        })
        stats["prepared"] += 1

    if notifications:
        stats["delivered"] = await notify(
            "militant_qr_distribution",
            {
                "campaign_id": campaign.id,
                "campaign_name": campaign.name,
                "notifications": notifications,
                "timestamp": to_utc_z(utcnow()),
            },
        )
        if not stats["delivered"]:
            stats["errors"].append("Notification webhook did not accept the batch")

    logger.info(
        "Militant code distribution for campaign %d: %d prepared, %d skipped",
        campaign.id, stats["prepared"], stats["skipped"],
    )
    return stats
