"""ORM models for campaigns, personas, events, QR codes, attendance and points.

Campaign/persona/event CRUD lives in other services; only the columns the
attendance and points core reads or writes are mapped here.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    false,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from checkpoint.clock import minutes_between, utcnow
from checkpoint.db.base import Base, BigIntPK, UTCDateTime


def _enum(enum_cls: type[enum.Enum], length: int = 24) -> Enum:
    """Store an enum as its value in a plain VARCHAR (no native PG enum)."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda cls: [member.value for member in cls],
        validate_strings=True,
    )


class UniverseType(str, enum.Enum):
    """Coarse persona category that gates QR issuance and bonus rules."""

    GENERAL = "U1"
    GROUP_MEMBER = "U2"
    LEADER = "U3"
    PRIVILEGED = "U4"


class QrType(str, enum.Enum):
    REGISTRATION = "REGISTRATION"
    ENTRY = "ENTRY"
    EXIT = "EXIT"
    LEADER_GUEST = "LEADER_GUEST"
    MILITANT_FASTTRACK = "MILITANT_FASTTRACK"


class AttendanceStatus(str, enum.Enum):
    """Attendance lifecycle. NONE is the absence of a record and never stored."""

    NONE = "NONE"
    REGISTERED = "REGISTERED"
    ENTERED = "ENTERED"
    COMPLETED = "COMPLETED"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [
    AttendanceStatus.NONE,
    AttendanceStatus.REGISTERED,
    AttendanceStatus.ENTERED,
    AttendanceStatus.COMPLETED,
]


class PointKind(str, enum.Enum):
    ATTENDANCE = "attendance"
    LEADER_BONUS = "leader_bonus"


# ---------------------------------------------------------------------------
# Campaigns & personas
# ---------------------------------------------------------------------------


class Campaign(Base):
    """Maps to the 'campaigns' table."""

    __tablename__ = "campaigns"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())


class Persona(Base):
    """A person known to the CRM. Only identity and loyalty balance are used here."""

    __tablename__ = "personas"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32), unique=True, nullable=True)
    universe_type: Mapped[UniverseType] = mapped_column(
        _enum(UniverseType, 4), nullable=False, default=UniverseType.GENERAL
    )
    is_leader: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    loyalty_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class Event(Base):
    """Scheduled event. Carries the grace-period and distribution flags."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    grace_period_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    auto_close_scheduled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    points_distribution_scheduled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    points_distributed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    bonus_points_for_attendee: Mapped[int] = mapped_column(Integer, nullable=False, default=50, server_default="50")
    bonus_points_for_leader: Mapped[int] = mapped_column(Integer, nullable=False, default=10, server_default="10")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())

    __table_args__ = (
        CheckConstraint("grace_period_hours >= 0", name="ck_events_grace_non_negative"),
        CheckConstraint(
            "bonus_points_for_attendee >= 0 AND bonus_points_for_leader >= 0",
            name="ck_events_bonus_non_negative",
        ),
    )


# ---------------------------------------------------------------------------
# QR codes
# ---------------------------------------------------------------------------


class QrCode(Base):
    """Scannable token. Only ``scan_count`` changes when a code is scanned."""

    __tablename__ = "qr_codes"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    # NULL = campaign-wide (militant fast-track codes)
    event_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("events.id", ondelete="CASCADE"), nullable=True, index=True
    )
    type: Mapped[QrType] = mapped_column(_enum(QrType), nullable=False)
    code: Mapped[str] = mapped_column(String(96), unique=True, nullable=False)
    owner_persona_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("personas.id", ondelete="CASCADE"), nullable=True, index=True
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    scan_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())
    deactivated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "type <> 'LEADER_GUEST' OR owner_persona_id IS NOT NULL",
            name="ck_qr_codes_leader_guest_owner",
        ),
        CheckConstraint(
            "type <> 'MILITANT_FASTTRACK' OR (event_id IS NULL AND owner_persona_id IS NOT NULL)",
            name="ck_qr_codes_militant_campaign_scope",
        ),
        Index("idx_qr_codes_campaign_type", "campaign_id", "type"),
        # One live fast-track code per militant per campaign
        Index(
            "uq_qr_codes_militant_owner",
            "campaign_id",
            "owner_persona_id",
            unique=True,
            postgresql_where=text("type = 'MILITANT_FASTTRACK' AND active"),
            sqlite_where=text("type = 'MILITANT_FASTTRACK' AND active"),
        ),
    )


# ---------------------------------------------------------------------------
# Attendance
# ---------------------------------------------------------------------------


class AttendanceRecord(Base):
    """One row per (event, persona): the unit of attendance truth."""

    __tablename__ = "attendance_records"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    persona_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("personas.id", ondelete="CASCADE"), nullable=False, index=True
    )
    referring_leader_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("personas.id", ondelete="SET NULL"), nullable=True, index=True
    )
    group_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[AttendanceStatus] = mapped_column(_enum(AttendanceStatus, 16), nullable=False)
    registered_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    entered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    exited_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    fast_track: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    closed_by_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    entry_qr_code_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("qr_codes.id", ondelete="SET NULL"), nullable=True
    )
    exit_qr_code_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("qr_codes.id", ondelete="SET NULL"), nullable=True
    )
    points_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    points_settled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())

    __table_args__ = (
        UniqueConstraint("event_id", "persona_id", name="uq_attendance_event_persona"),
        CheckConstraint(
            "exited_at IS NULL OR (entered_at IS NOT NULL AND exited_at >= entered_at)",
            name="ck_attendance_exit_after_entry",
        ),
        Index("idx_attendance_event_status", "event_id", "status"),
    )

    @property
    def duration_minutes(self) -> int | None:
        if self.entered_at is None or self.exited_at is None:
            return None
        return minutes_between(self.entered_at, self.exited_at)


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------


class PointHistory(Base):
    """Append-only audit log of point awards."""

    __tablename__ = "point_history"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    persona_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("personas.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("events.id", ondelete="CASCADE"), nullable=True, index=True
    )
    kind: Mapped[PointKind] = mapped_column(_enum(PointKind, 32), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())
