"""Attendance endpoints: staff-assisted check-in/out and status lookup."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.attendance import service
from checkpoint.attendance.schemas import (
    AttendanceRecordResponse,
    AttendanceStatusResponse,
    ManualCheckInRequest,
    ManualCheckOutRequest,
)
from checkpoint.database import get_session

router = APIRouter(prefix="/api/v1", tags=["Attendance"])


@router.post("/attendance/manual-checkin", response_model=AttendanceRecordResponse)
async def manual_check_in(
    body: ManualCheckInRequest,
    db: AsyncSession = Depends(get_session),
):
    """Check someone in by id or phone when they cannot present a code."""
    record = await service.manual_check_in(
        db,
        body.event_id,
        persona_id=body.persona_id,
        phone=body.phone,
        referring_leader_id=body.referring_leader_id,
        group_id=body.group_id,
    )
    return AttendanceRecordResponse.model_validate(record)


@router.post("/attendance/manual-checkout", response_model=AttendanceRecordResponse)
async def manual_check_out(
    body: ManualCheckOutRequest,
    db: AsyncSession = Depends(get_session),
):
    record = await service.manual_check_out(
        db,
        body.event_id,
        persona_id=body.persona_id,
        phone=body.phone,
    )
    return AttendanceRecordResponse.model_validate(record)


@router.get("/events/{event_id}/attendees/{persona_id}", response_model=AttendanceStatusResponse)
async def attendance_status(
    event_id: int,
    persona_id: int,
    db: AsyncSession = Depends(get_session),
):
    await service.get_event(db, event_id, require_active=False)
    return AttendanceStatusResponse(**await service.attendance_status(db, event_id, persona_id))
