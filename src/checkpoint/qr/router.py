"""QR endpoints: scan, event code issuance, regeneration and deactivation."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.attendance.service import get_event
from checkpoint.database import get_session
from checkpoint.qr import registry, scan_router
from checkpoint.qr.schemas import (
    EventCodesResponse,
    QrCodeResponse,
    RegenerateResponse,
    ScanRequest,
    ScanResponse,
)

router = APIRouter(prefix="/api/v1", tags=["QR"])


@router.post("/qr/scan", response_model=ScanResponse)
async def scan(
    body: ScanRequest,
    db: AsyncSession = Depends(get_session),
):
    """Process one scan from a door or registration scanner."""
    result = await scan_router.route(
        db,
        body.code,
        body.event_id,
        body.action,
        persona_id=body.persona_id,
        phone=body.phone,
        referring_leader_id=body.referring_leader_id,
        group_id=body.group_id,
    )
    return ScanResponse(**asdict(result))


@router.post("/events/{event_id}/qr-codes", response_model=EventCodesResponse)
async def issue_event_codes(
    event_id: int,
    db: AsyncSession = Depends(get_session),
):
    """Create the registration/entry/exit codes and leader-guest codes of an event."""
    event = await get_event(db, event_id)
    issued = await registry.issue_event_codes(db, event)
    await db.commit()
    return EventCodesResponse(
        event_id=event.id,
        created=issued["created"],
        codes=[QrCodeResponse.model_validate(qr) for qr in issued["codes"]],
        leader_codes=[QrCodeResponse.model_validate(qr) for qr in issued["leader_codes"]],
    )


@router.get("/events/{event_id}/qr-codes", response_model=EventCodesResponse)
async def list_event_codes(
    event_id: int,
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_session),
):
    await get_event(db, event_id, require_active=False)
    codes = await registry.list_event_codes(db, event_id, include_inactive=include_inactive)
    return EventCodesResponse(
        event_id=event_id,
        codes=[QrCodeResponse.model_validate(qr) for qr in codes],
    )


@router.post("/qr/{qr_id}/regenerate", response_model=RegenerateResponse)
async def regenerate_code(
    qr_id: int,
    db: AsyncSession = Depends(get_session),
):
    """Replace a lost or compromised code. The old code stops scanning immediately."""
    old = await registry.get_code(db, qr_id)
    new = await registry.regenerate(db, qr_id)
    await db.commit()
    return RegenerateResponse(
        old=QrCodeResponse.model_validate(old),
        new=QrCodeResponse.model_validate(new),
    )


@router.post("/qr/{qr_id}/deactivate", response_model=QrCodeResponse)
async def deactivate_code(
    qr_id: int,
    db: AsyncSession = Depends(get_session),
):
    qr = await registry.deactivate(db, qr_id)
    await db.commit()
    return QrCodeResponse.model_validate(qr)
