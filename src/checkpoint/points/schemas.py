"""Pydantic schemas for points distribution and leader endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class LeaderBonusResponse(BaseModel):
    leader_id: int
    guest_count: int
    points: int
    guest_ids: list[int]


class DistributionResponse(BaseModel):
    success: bool = True
    event_id: int
    forced: bool
    attendees_count: int
    attendee_points_total: int
    leader_points_total: int
    total_points: int
    reversed_points: int
    leaders: list[LeaderBonusResponse]


class LeaderBonusPreviewResponse(BaseModel):
    leader_id: int
    leader_name: str
    event_id: int
    guests_attended: int
    points_per_guest: int
    total_bonus: int
    points_distributed: bool


class RecentBonusResponse(BaseModel):
    event_id: int | None
    event_name: str
    points: int
    guests_count: int
    date: datetime


class LeaderStatsResponse(BaseModel):
    leader_id: int
    leader_name: str
    total_guests_invited: int
    total_bonus_points_earned: int
    events_participated: int
    current_loyalty_balance: int
    recent_bonuses: list[RecentBonusResponse]
