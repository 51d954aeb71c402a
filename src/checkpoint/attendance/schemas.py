"""Pydantic schemas for manual check-in/out and attendance status."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from checkpoint.db.models import AttendanceStatus


class _IdentityRequest(BaseModel):
    event_id: int
    persona_id: int | None = None
    phone: str | None = Field(default=None, max_length=32)

    @model_validator(mode="after")
    def _require_identity(self) -> _IdentityRequest:
        if self.persona_id is None and not self.phone:
            raise ValueError("persona_id or phone is required")
        return self


class ManualCheckInRequest(_IdentityRequest):
    referring_leader_id: int | None = None
    group_id: int | None = None


class ManualCheckOutRequest(_IdentityRequest):
    pass


class AttendanceRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool = True
    event_id: int
    persona_id: int
    status: AttendanceStatus
    referring_leader_id: int | None
    registered_at: datetime
    entered_at: datetime | None
    exited_at: datetime | None
    duration_minutes: int | None
    fast_track: bool
    closed_by_system: bool


class AttendanceStatusResponse(BaseModel):
    event_id: int
    persona_id: int
    status: AttendanceStatus
    registered_at: datetime | None = None
    entered_at: datetime | None = None
    exited_at: datetime | None = None
    duration_minutes: int | None = None
    fast_track: bool = False
    closed_by_system: bool = False
    referring_leader_id: int | None = None
    next_actions: list[AttendanceStatus] = []
