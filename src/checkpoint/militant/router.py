"""Militant fast-track code endpoints (campaign scoped)."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.database import get_session
from checkpoint.militant import issuer
from checkpoint.militant.schemas import MilitantDistributionResponse, MilitantIssueResponse
from checkpoint.qr.schemas import QrCodeResponse

router = APIRouter(prefix="/api/v1", tags=["Militant QR"])


@router.post("/campaigns/{campaign_id}/militant-qrs", response_model=MilitantIssueResponse)
async def issue_militant_codes(
    campaign_id: int,
    db: AsyncSession = Depends(get_session),
):
    """Issue the missing fast-track codes for every privileged persona."""
    issued = await issuer.issue_for_campaign(db, campaign_id)
    return MilitantIssueResponse(
        campaign_id=issued["campaign_id"],
        created=issued["created"],
        existing=issued["existing"],
        codes=[QrCodeResponse.model_validate(qr) for qr in issued["codes"]],
    )


@router.get("/campaigns/{campaign_id}/militant-qrs", response_model=list[QrCodeResponse])
async def list_militant_codes(
    campaign_id: int,
    db: AsyncSession = Depends(get_session),
):
    await issuer.get_campaign(db, campaign_id)
    return [QrCodeResponse.model_validate(qr) for qr in await issuer.list_campaign_codes(db, campaign_id)]


@router.post(
    "/campaigns/{campaign_id}/militant-qrs/{persona_id}/regenerate",
    response_model=QrCodeResponse,
)
async def regenerate_militant_code(
    campaign_id: int,
    persona_id: int,
    db: AsyncSession = Depends(get_session),
):
    qr = await issuer.regenerate(db, campaign_id, persona_id)
    return QrCodeResponse.model_validate(qr)


@router.post("/campaigns/{campaign_id}/militant-qrs/distribute", response_model=MilitantDistributionResponse)
async def distribute_militant_codes(
    campaign_id: int,
    db: AsyncSession = Depends(get_session),
):
    """Send the live codes to the notification webhook for WhatsApp delivery."""
    stats = await issuer.distribute_codes(db, campaign_id)
    return MilitantDistributionResponse(campaign_id=campaign_id, **stats)
