"""Pydantic schemas for militant fast-track code endpoints."""

from __future__ import annotations

from pydantic import BaseModel

from checkpoint.qr.schemas import QrCodeResponse


class MilitantIssueResponse(BaseModel):
    campaign_id: int
    created: int
    existing: int
    codes: list[QrCodeResponse]


class MilitantDistributionResponse(BaseModel):
    campaign_id: int
    total_codes: int
    prepared: int
    skipped: int
    delivered: bool
    errors: list[str]
