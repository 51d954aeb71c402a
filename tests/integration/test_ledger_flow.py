"""Integration tests: attendance ledger through the scan router."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from checkpoint.attendance import ledger, service
from checkpoint.db.models import AttendanceRecord, AttendanceStatus, Event, QrCode, QrType
from checkpoint.errors import (
    AlreadyEntered,
    AlreadyExited,
    AlreadyRegistered,
    CodeNotValidForEvent,
    NotEntered,
    NotRegistered,
    PersonaNotFound,
    QrInactive,
    QrNotFound,
    SelfReferral,
    WrongCodeForAction,
)
from checkpoint.qr import registry
from checkpoint.qr.scan_router import ScanAction, route


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 14, hour, minute, tzinfo=timezone.utc)


async def _scan_count(db, code: str) -> int:
    result = await db.execute(select(QrCode.scan_count).where(QrCode.code == code))
    return result.scalar_one()


class TestScanLifecycle:
    """Register, enter and exit through the shared event codes."""

    @pytest.mark.asyncio
    async def test_register_then_enter_then_repeat_entry(self, db, seed):
        """A second ENTRY scan fails and leaves entered_at untouched."""
        result = await route(db, seed.codes["REGISTRATION"], seed.event_id, ScanAction.REGISTER,
                             persona_id=seed.alice_id, now=at(9, 30))
        assert result.status is AttendanceStatus.REGISTERED

        result = await route(db, seed.codes["ENTRY"], seed.event_id, ScanAction.ENTER,
                             persona_id=seed.alice_id, now=at(10))
        assert result.status is AttendanceStatus.ENTERED
        assert result.record["entered_at"] == at(10).isoformat()

        with pytest.raises(AlreadyEntered) as exc_info:
            await route(db, seed.codes["ENTRY"], seed.event_id, ScanAction.ENTER,
                        persona_id=seed.alice_id, now=at(10, 5))
        assert exc_info.value.context["record"]["entered_at"] == at(10).isoformat()

        record = await ledger.get_record(db, seed.event_id, seed.alice_id)
        assert record.entered_at == at(10)
        # The rejected scan was rolled back, counter included.
        assert await _scan_count(db, seed.codes["ENTRY"]) == 1

    @pytest.mark.asyncio
    async def test_enter_and_exit_duration(self, db, seed):
        await route(db, seed.codes["REGISTRATION"], seed.event_id, ScanAction.REGISTER,
                    persona_id=seed.alice_id, now=at(9))
        await route(db, seed.codes["ENTRY"], seed.event_id, ScanAction.ENTER,
                    persona_id=seed.alice_id, now=at(10))
        result = await route(db, seed.codes["EXIT"], seed.event_id, ScanAction.EXIT,
                             persona_id=seed.alice_id, now=at(12))

        assert result.status is AttendanceStatus.COMPLETED
        record = await ledger.get_record(db, seed.event_id, seed.alice_id)
        assert record.exited_at == at(12)
        assert record.duration_minutes == 120

        with pytest.raises(AlreadyExited):
            await route(db, seed.codes["EXIT"], seed.event_id, ScanAction.EXIT,
                        persona_id=seed.alice_id, now=at(12, 1))

    @pytest.mark.asyncio
    async def test_identity_by_phone(self, db, seed):
        result = await route(db, seed.codes["REGISTRATION"], seed.event_id, ScanAction.REGISTER,
                             phone="+52 55 0000 0003", now=at(9))
        assert result.persona_id == seed.alice_id

    @pytest.mark.asyncio
    async def test_entry_without_registration(self, db, seed):
        with pytest.raises(NotRegistered):
            await route(db, seed.codes["ENTRY"], seed.event_id, ScanAction.ENTER,
                        persona_id=seed.bob_id, now=at(10))
        assert await ledger.get_record(db, seed.event_id, seed.bob_id) is None

    @pytest.mark.asyncio
    async def test_exit_without_entry(self, db, seed):
        await route(db, seed.codes["REGISTRATION"], seed.event_id, ScanAction.REGISTER,
                    persona_id=seed.bob_id, now=at(9))
        with pytest.raises(NotEntered):
            await route(db, seed.codes["EXIT"], seed.event_id, ScanAction.EXIT,
                        persona_id=seed.bob_id, now=at(10))

    @pytest.mark.asyncio
    async def test_double_registration(self, db, seed):
        await route(db, seed.codes["REGISTRATION"], seed.event_id, ScanAction.REGISTER,
                    persona_id=seed.bob_id, now=at(9))
        with pytest.raises(AlreadyRegistered):
            await route(db, seed.codes["REGISTRATION"], seed.event_id, ScanAction.REGISTER,
                        persona_id=seed.bob_id, now=at(9, 1))

    @pytest.mark.asyncio
    async def test_unknown_referring_leader_is_rejected(self, db, seed):
        with pytest.raises(PersonaNotFound) as exc_info:
            await route(db, seed.codes["REGISTRATION"], seed.event_id, ScanAction.REGISTER,
                        persona_id=seed.alice_id, referring_leader_id=99999, now=at(9))
        assert exc_info.value.context == {"referring_leader_id": 99999}
        assert await ledger.get_record(db, seed.event_id, seed.alice_id) is None
        assert await _scan_count(db, seed.codes["REGISTRATION"]) == 0

    @pytest.mark.asyncio
    async def test_persona_cannot_refer_themselves(self, db, seed):
        with pytest.raises(SelfReferral):
            await route(db, seed.codes["REGISTRATION"], seed.event_id, ScanAction.REGISTER,
                        persona_id=seed.alice_id, referring_leader_id=seed.alice_id, now=at(9))
        assert await ledger.get_record(db, seed.event_id, seed.alice_id) is None


class TestScanRejections:
    """Validation failures have no side effects."""

    @pytest.mark.asyncio
    async def test_unknown_code(self, db, seed):
        with pytest.raises(QrNotFound):
            await route(db, "QR2-C1-E1-DOESNOTEXIST", seed.event_id, ScanAction.ENTER, persona_id=seed.alice_id)

    @pytest.mark.asyncio
    async def test_deactivated_code(self, db, seed):
        qr = await registry.get_by_code(db, seed.codes["REGISTRATION"])
        await registry.deactivate(db, qr.id)
        await db.commit()
        with pytest.raises(QrInactive):
            await route(db, seed.codes["REGISTRATION"], seed.event_id, ScanAction.REGISTER,
                        persona_id=seed.alice_id)
        assert await ledger.get_record(db, seed.event_id, seed.alice_id) is None

    @pytest.mark.asyncio
    async def test_wrong_scanner(self, db, seed):
        with pytest.raises(WrongCodeForAction):
            await route(db, seed.codes["EXIT"], seed.event_id, ScanAction.REGISTER, persona_id=seed.alice_id)
        assert await _scan_count(db, seed.codes["EXIT"]) == 0

    @pytest.mark.asyncio
    async def test_code_of_another_event(self, db, seed):
        other = Event(campaign_id=seed.campaign_id, name="Otro evento")
        db.add(other)
        await db.commit()
        with pytest.raises(CodeNotValidForEvent):
            await route(db, seed.codes["REGISTRATION"], other.id, ScanAction.REGISTER, persona_id=seed.alice_id)


class TestLeaderGuestCode:
    @pytest.mark.asyncio
    async def test_leader_code_counts_but_writes_nothing(self, db, seed):
        result = await route(db, seed.leader_code, seed.event_id, ScanAction.REGISTER, now=at(9))
        assert result.leader_id == seed.leader_id
        assert result.persona_id is None
        assert result.status is None
        assert result.scan_count == 1

        rows = await db.execute(select(AttendanceRecord).where(AttendanceRecord.event_id == seed.event_id))
        assert rows.scalars().all() == []


class TestFastTrack:
    @pytest.mark.asyncio
    async def test_militant_code_enters_without_registration(self, db, seed):
        qr = await registry.issue(db, QrType.MILITANT_FASTTRACK, seed.campaign_id,
                                  owner_persona_id=seed.militant_id)
        await db.commit()

        result = await route(db, qr.code, seed.event_id, ScanAction.ENTER, now=at(10))
        assert result.persona_id == seed.militant_id
        assert result.status is AttendanceStatus.ENTERED
        assert result.fast_track is True

        record = await ledger.get_record(db, seed.event_id, seed.militant_id)
        assert record.registered_at == at(10)
        assert record.entered_at == at(10)
        assert record.entry_qr_code_id == qr.id

        with pytest.raises(AlreadyEntered):
            await route(db, qr.code, seed.event_id, ScanAction.ENTER, now=at(10, 1))

        result = await route(db, qr.code, seed.event_id, ScanAction.EXIT, now=at(11))
        assert result.status is AttendanceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_militant_code_of_another_campaign(self, db, seed):
        qr = await registry.issue(db, QrType.MILITANT_FASTTRACK, seed.other_campaign_id,
                                  owner_persona_id=seed.militant_id)
        await db.commit()
        with pytest.raises(CodeNotValidForEvent):
            await route(db, qr.code, seed.event_id, ScanAction.ENTER)


class TestConcurrentEntry:
    @pytest.mark.asyncio
    async def test_exactly_one_of_two_concurrent_entries_wins(self, db, other_db, seed):
        await route(db, seed.codes["REGISTRATION"], seed.event_id, ScanAction.REGISTER,
                    persona_id=seed.carol_id, now=at(9))

        outcomes = await asyncio.gather(
            route(db, seed.codes["ENTRY"], seed.event_id, ScanAction.ENTER, persona_id=seed.carol_id, now=at(10)),
            route(other_db, seed.codes["ENTRY"], seed.event_id, ScanAction.ENTER,
                  persona_id=seed.carol_id, now=at(10)),
            return_exceptions=True,
        )

        winners = [o for o in outcomes if not isinstance(o, BaseException)]
        losers = [o for o in outcomes if isinstance(o, BaseException)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], AlreadyEntered)
        assert await _scan_count(db, seed.codes["ENTRY"]) == 1


class TestForceComplete:
    @pytest.mark.asyncio
    async def test_closes_only_open_attendees(self, db, seed):
        for persona_id in (seed.alice_id, seed.bob_id, seed.carol_id):
            await ledger.register(db, seed.event_id, persona_id, now=at(9))
        await ledger.enter(db, seed.event_id, seed.alice_id, now=at(10))
        await ledger.enter(db, seed.event_id, seed.bob_id, now=at(10))
        await ledger.exit(db, seed.event_id, seed.bob_id, now=at(11))
        await db.commit()

        closed = await ledger.force_complete_open(db, seed.event_id, at=at(19))
        await db.commit()
        assert closed == 1

        alice = await ledger.get_record(db, seed.event_id, seed.alice_id)
        assert alice.status is AttendanceStatus.COMPLETED
        assert alice.exited_at == at(19)
        assert alice.closed_by_system is True

        bob = await ledger.get_record(db, seed.event_id, seed.bob_id)
        assert bob.exited_at == at(11)
        assert bob.closed_by_system is False

        carol = await ledger.get_record(db, seed.event_id, seed.carol_id)
        assert carol.status is AttendanceStatus.REGISTERED

    @pytest.mark.asyncio
    async def test_exit_never_before_entry(self, db, seed):
        await ledger.register(db, seed.event_id, seed.alice_id, now=at(9))
        await ledger.enter(db, seed.event_id, seed.alice_id, now=at(20))
        assert await ledger.force_complete(db, seed.event_id, seed.alice_id, at=at(19)) is True
        await db.commit()

        record = await ledger.get_record(db, seed.event_id, seed.alice_id)
        assert record.exited_at == record.entered_at == at(20)

    @pytest.mark.asyncio
    async def test_every_record_respects_timestamp_order(self, db, seed):
        await ledger.register(db, seed.event_id, seed.alice_id, now=at(9))
        await ledger.enter(db, seed.event_id, seed.alice_id, now=at(10))
        await ledger.exit(db, seed.event_id, seed.alice_id, now=at(12))
        await ledger.register(db, seed.event_id, seed.bob_id, now=at(9))
        await ledger.enter(db, seed.event_id, seed.bob_id, now=at(10))
        await ledger.force_complete_open(db, seed.event_id, at=at(19))
        await db.commit()

        rows = await db.execute(select(AttendanceRecord).where(AttendanceRecord.event_id == seed.event_id))
        for record in rows.scalars().all():
            if record.exited_at is not None:
                assert record.entered_at is not None
                assert record.exited_at >= record.entered_at


class TestManualCheckIn:
    @pytest.mark.asyncio
    async def test_registers_and_enters_in_one_step(self, db, seed):
        record = await service.manual_check_in(
            db, seed.event_id, phone="+525500000004", referring_leader_id=seed.leader_id, now=at(10),
        )
        assert record.status is AttendanceStatus.ENTERED
        assert record.referring_leader_id == seed.leader_id
        assert record.fast_track is False

    @pytest.mark.asyncio
    async def test_late_leader_attribution_is_ignored(self, db, seed):
        await ledger.register(db, seed.event_id, seed.alice_id, now=at(9))
        await db.commit()

        record = await service.manual_check_in(
            db, seed.event_id, persona_id=seed.alice_id, referring_leader_id=seed.leader_id, now=at(10),
        )
        assert record.status is AttendanceStatus.ENTERED
        assert record.referring_leader_id is None

    @pytest.mark.asyncio
    async def test_unknown_referring_leader_is_rejected(self, db, seed):
        with pytest.raises(PersonaNotFound):
            await service.manual_check_in(
                db, seed.event_id, persona_id=seed.bob_id, referring_leader_id=99999, now=at(10),
            )
        assert await ledger.get_record(db, seed.event_id, seed.bob_id) is None

    @pytest.mark.asyncio
    async def test_self_referral_is_rejected(self, db, seed):
        with pytest.raises(SelfReferral):
            await service.manual_check_in(
                db, seed.event_id, persona_id=seed.bob_id, referring_leader_id=seed.bob_id, now=at(10),
            )
        assert await ledger.get_record(db, seed.event_id, seed.bob_id) is None

    @pytest.mark.asyncio
    async def test_manual_check_out(self, db, seed):
        await service.manual_check_in(db, seed.event_id, persona_id=seed.alice_id, now=at(10))
        record = await service.manual_check_out(db, seed.event_id, persona_id=seed.alice_id, now=at(11, 30))
        assert record.status is AttendanceStatus.COMPLETED
        assert record.duration_minutes == 90

    @pytest.mark.asyncio
    async def test_status_lookup(self, db, seed):
        status = await service.attendance_status(db, seed.event_id, seed.alice_id)
        assert status["status"] is AttendanceStatus.NONE
        assert status["next_actions"] == [AttendanceStatus.REGISTERED]

        await service.manual_check_in(db, seed.event_id, persona_id=seed.alice_id, now=at(10))
        status = await service.attendance_status(db, seed.event_id, seed.alice_id)
        assert status["status"] is AttendanceStatus.ENTERED
        assert status["next_actions"] == [AttendanceStatus.COMPLETED]
