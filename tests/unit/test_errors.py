"""Unit tests for the error taxonomy and localized messages."""

from __future__ import annotations

from checkpoint.errors import (
    MESSAGES,
    AlreadyEntered,
    AttendanceConflict,
    AttendanceIntegrityError,
    CheckpointError,
    IntegrityFault,
    QrNotFound,
    message_for,
)


def test_every_kind_has_both_languages():
    assert set(MESSAGES["en"]) == set(MESSAGES["es"])


def test_message_for_spanish():
    assert message_for("already_entered", "es") == "Ya registró su entrada."


def test_message_for_region_tag():
    assert message_for("already_entered", "es-MX") == message_for("already_entered", "es")


def test_message_for_unknown_language_falls_back_to_english():
    assert message_for("qr_not_found", "fr") == "QR code not found."


def test_message_for_unknown_kind_returns_kind():
    assert message_for("no_such_kind", "es") == "no_such_kind"


def test_to_dict_carries_kind_and_context():
    err = QrNotFound(code="QR2-NOPE")
    data = err.to_dict("en")
    assert data == {
        "success": False,
        "kind": "qr_not_found",
        "detail": "QR code not found.",
        "code": "QR2-NOPE",
    }
    assert err.status_code == 404


def test_to_dict_uses_default_locale():
    data = AlreadyEntered().to_dict(None, default_locale="es")
    assert data["detail"] == "Ya registró su entrada."


def test_hierarchy():
    assert issubclass(AlreadyEntered, AttendanceConflict)
    assert AlreadyEntered.status_code == 409
    assert issubclass(AttendanceIntegrityError, IntegrityFault)
    assert issubclass(IntegrityFault, CheckpointError)
    assert AttendanceIntegrityError.status_code == 500
