"""Points endpoints: distribution trigger and leader bonus views."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.database import get_session
from checkpoint.points import leaders
from checkpoint.points.distribution import distribute
from checkpoint.points.schemas import (
    DistributionResponse,
    LeaderBonusPreviewResponse,
    LeaderStatsResponse,
)

router = APIRouter(prefix="/api/v1", tags=["Points"])


@router.post("/events/{event_id}/distribute-bonuses", response_model=DistributionResponse)
async def distribute_bonuses(
    event_id: int,
    force: bool = Query(False, description="Reverse the previous run and recompute"),
    db: AsyncSession = Depends(get_session),
):
    """Administrative trigger for the same distribution the scheduler runs."""
    result = await distribute(db, event_id, force=force)
    return DistributionResponse(**result.to_dict())


@router.get("/leaders/{leader_id}/bonus-preview", response_model=LeaderBonusPreviewResponse)
async def bonus_preview(
    leader_id: int,
    event_id: int = Query(...),
    db: AsyncSession = Depends(get_session),
):
    return LeaderBonusPreviewResponse(**await leaders.bonus_preview(db, leader_id, event_id))


@router.get("/leaders/{leader_id}/stats", response_model=LeaderStatsResponse)
async def leader_stats(
    leader_id: int,
    db: AsyncSession = Depends(get_session),
):
    return LeaderStatsResponse(**await leaders.leader_stats(db, leader_id))
