"""Unit tests for the attendance state machine."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from checkpoint.attendance.ledger import (
    VALID_TRANSITIONS,
    _is_duplicate_record,
    allowed_next,
    check_invariants,
    validate_transition,
)
from checkpoint.db.models import AttendanceRecord, AttendanceStatus
from checkpoint.errors import AttendanceIntegrityError

S = AttendanceStatus
T0 = datetime(2026, 3, 14, 10, 0, tzinfo=timezone.utc)


class TestTransitionTable:
    """The lifecycle only moves forward, one step at a time."""

    def test_every_state_has_an_entry(self):
        assert set(VALID_TRANSITIONS) == set(AttendanceStatus)

    def test_forward_path(self):
        validate_transition(S.NONE, S.REGISTERED)
        validate_transition(S.REGISTERED, S.ENTERED)
        validate_transition(S.ENTERED, S.COMPLETED)

    def test_completed_is_terminal(self):
        assert VALID_TRANSITIONS[S.COMPLETED] == []
        for target in AttendanceStatus:
            with pytest.raises(ValueError, match="Invalid transition"):
                validate_transition(S.COMPLETED, target)

    def test_cannot_go_backwards(self):
        with pytest.raises(ValueError, match="Invalid transition"):
            validate_transition(S.ENTERED, S.REGISTERED)

    def test_cannot_skip_entry(self):
        with pytest.raises(ValueError, match="Invalid transition"):
            validate_transition(S.REGISTERED, S.COMPLETED)

    def test_self_transition_rejected(self):
        with pytest.raises(ValueError, match="Invalid transition"):
            validate_transition(S.ENTERED, S.ENTERED)

    def test_none_to_entered_requires_fast_track(self):
        with pytest.raises(ValueError, match="requires fast-track"):
            validate_transition(S.NONE, S.ENTERED)
        validate_transition(S.NONE, S.ENTERED, fast_track=True)


class TestAllowedNext:
    def test_from_none(self):
        assert allowed_next(S.NONE) == [S.REGISTERED]

    def test_from_none_with_fast_track(self):
        assert allowed_next(S.NONE, fast_track=True) == [S.REGISTERED, S.ENTERED]

    def test_from_registered(self):
        assert allowed_next(S.REGISTERED) == [S.ENTERED]

    def test_from_completed(self):
        assert allowed_next(S.COMPLETED) == []


class TestInvariants:
    """Records whose timestamps contradict their status are rejected."""

    def _record(self, **kwargs) -> AttendanceRecord:
        values = {"id": 1, "event_id": 1, "persona_id": 1, "registered_at": T0}
        values.update(kwargs)
        return AttendanceRecord(**values)

    def test_consistent_completed_record(self):
        check_invariants(self._record(
            status=S.COMPLETED,
            entered_at=T0,
            exited_at=T0 + timedelta(hours=2),
        ))

    def test_exit_without_entry(self):
        with pytest.raises(AttendanceIntegrityError) as exc_info:
            check_invariants(self._record(status=S.COMPLETED, exited_at=T0))
        assert "exited_at set without entered_at" in exc_info.value.context["problems"]

    def test_exit_before_entry(self):
        with pytest.raises(AttendanceIntegrityError) as exc_info:
            check_invariants(self._record(
                status=S.COMPLETED,
                entered_at=T0,
                exited_at=T0 - timedelta(minutes=1),
            ))
        assert "exited_at before entered_at" in exc_info.value.context["problems"]

    def test_entered_without_timestamp(self):
        with pytest.raises(AttendanceIntegrityError):
            check_invariants(self._record(status=S.ENTERED))

    def test_duration_minutes(self):
        record = self._record(status=S.COMPLETED, entered_at=T0, exited_at=T0 + timedelta(minutes=120, seconds=59))
        assert record.duration_minutes == 120


class TestDuplicateDetection:
    """Only the (event, persona) unique key means another writer won."""

    @pytest.mark.parametrize("message", [
        'duplicate key value violates unique constraint "uq_attendance_event_persona"',
        "UNIQUE constraint failed: attendance_records.event_id, attendance_records.persona_id",
    ])
    def test_unique_key_violation(self, message):
        assert _is_duplicate_record(IntegrityError("INSERT", {}, Exception(message)))

    @pytest.mark.parametrize("message", [
        'insert or update on table "attendance_records" violates foreign key constraint '
        '"attendance_records_referring_leader_id_fkey"',
        "FOREIGN KEY constraint failed",
        "CHECK constraint failed: ck_attendance_exit_after_entry",
    ])
    def test_other_integrity_errors(self, message):
        assert not _is_duplicate_record(IntegrityError("INSERT", {}, Exception(message)))
