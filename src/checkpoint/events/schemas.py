"""Pydantic schemas for event lifecycle endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class EndEventResponse(BaseModel):
    success: bool = True
    event_id: int
    ended_at: datetime
    grace_period_hours: int
    not_before: datetime
    already_ended: bool
    scheduled: bool
    job_id: str | None = None


class EventStateResponse(BaseModel):
    success: bool = True
    event_id: int
    active: bool
    ended_at: datetime | None
    auto_close_scheduled: bool
    points_distribution_scheduled: bool
    points_distributed: bool
