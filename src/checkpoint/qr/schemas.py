"""Pydantic schemas for QR scan and code management endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from checkpoint.db.models import AttendanceStatus, QrType
from checkpoint.qr.scan_router import ScanAction


class ScanRequest(BaseModel):
    code: str = Field(min_length=1, max_length=96)
    event_id: int
    action: ScanAction
    # Identity of the person presenting a shared event code (not needed for militant codes)
    persona_id: int | None = None
    phone: str | None = Field(default=None, max_length=32)
    referring_leader_id: int | None = None
    group_id: int | None = None


class ScanResponse(BaseModel):
    success: bool = True
    action: ScanAction
    qr_type: QrType
    event_id: int
    scan_count: int
    persona_id: int | None = None
    status: AttendanceStatus | None = None
    leader_id: int | None = None
    fast_track: bool = False
    record: dict[str, Any] = {}


class QrCodeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    campaign_id: int
    event_id: int | None
    type: QrType
    code: str
    owner_persona_id: int | None
    active: bool
    expires_at: datetime | None
    scan_count: int
    created_at: datetime


class EventCodesResponse(BaseModel):
    event_id: int
    created: int = 0
    codes: list[QrCodeResponse]
    leader_codes: list[QrCodeResponse] = []


class RegenerateResponse(BaseModel):
    old: QrCodeResponse
    new: QrCodeResponse
