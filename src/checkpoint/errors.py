"""Domain error taxonomy.

Client errors (bad code, wrong scanner, repeated scan, ...) are reported to
the caller and never retried. ``IntegrityFault`` subclasses are fatal: they
mean the data is in a state the state machine can never produce.
"""

from __future__ import annotations

from typing import Any

# Short human-readable reasons, keyed by error kind.
MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "qr_not_found": "QR code not found.",
        "qr_inactive": "This QR code has been deactivated.",
        "qr_expired": "This QR code has expired.",
        "wrong_code_for_action": "This QR code cannot be used at this scanner.",
        "code_not_valid_for_event": "This QR code does not belong to this event.",
        "already_registered": "Already registered for this event.",
        "not_registered": "Not registered for this event. Please register first.",
        "already_entered": "Already checked in.",
        "not_entered": "Cannot check out without checking in first.",
        "already_exited": "Already checked out.",
        "persona_not_found": "Person not found. Please register first.",
        "event_not_found": "Event not found.",
        "event_inactive": "This event has been deactivated.",
        "event_not_ended": "The event has not ended yet.",
        "already_distributed": "Points were already distributed for this event.",
        "campaign_not_found": "Campaign not found.",
        "not_privileged": "This person is not eligible for a fast-track code.",
        "identity_required": "A person id or phone number is required.",
        "self_referral": "A person cannot be their own referring leader.",
        "attendance_integrity": "Attendance data is inconsistent.",
        "code_collision": "Could not generate a unique QR code.",
    },
    "es": {
        "qr_not_found": "Código QR no encontrado.",
        "qr_inactive": "Este código QR fue desactivado.",
        "qr_expired": "Este código QR ha expirado.",
        "wrong_code_for_action": "Este código QR no se puede usar en este escáner.",
        "code_not_valid_for_event": "Este código QR no pertenece a este evento.",
        "already_registered": "Ya está registrado en este evento.",
        "not_registered": "No registrado para este evento. Regístrese primero.",
        "already_entered": "Ya registró su entrada.",
        "not_entered": "No puede registrar salida sin haber registrado entrada.",
        "already_exited": "Ya registró su salida.",
        "persona_not_found": "Persona no encontrada. Regístrese primero.",
        "event_not_found": "Evento no encontrado.",
        "event_inactive": "Este evento fue desactivado.",
        "event_not_ended": "El evento aún no ha terminado.",
        "already_distributed": "Los puntos de este evento ya fueron distribuidos.",
        "campaign_not_found": "Campaña no encontrada.",
        "not_privileged": "Esta persona no califica para un código de acceso rápido.",
        "identity_required": "Se requiere el id de la persona o un número de teléfono.",
        "self_referral": "Una persona no puede ser su propio líder de referencia.",
        "attendance_integrity": "Los datos de asistencia son inconsistentes.",
        "code_collision": "No se pudo generar un código QR único.",
    },
}


def message_for(kind: str, locale: str | None = None, default_locale: str = "en") -> str:
    """Resolve the localized message for an error kind, falling back to English."""
    lang = (locale or default_locale).split("-")[0].lower()
    catalog = MESSAGES.get(lang) or MESSAGES["en"]
    return catalog.get(kind) or MESSAGES["en"].get(kind, kind)


class CheckpointError(Exception):
    """Base for all domain errors surfaced to API callers."""

    kind = "checkpoint_error"
    status_code = 400

    def __init__(self, detail: str | None = None, **context: Any) -> None:  # noqa: ANN401
        self.context = context
        super().__init__(detail or message_for(self.kind))

    def to_dict(self, locale: str | None = None, default_locale: str = "en") -> dict[str, Any]:
        return {
            "success": False,
            "kind": self.kind,
            "detail": message_for(self.kind, locale, default_locale),
            **self.context,
        }


# --- QR validation ---


class QrNotFound(CheckpointError):
    kind = "qr_not_found"
    status_code = 404


class QrInactive(CheckpointError):
    kind = "qr_inactive"


class QrExpired(CheckpointError):
    kind = "qr_expired"


class WrongCodeForAction(CheckpointError):
    kind = "wrong_code_for_action"


class CodeNotValidForEvent(CheckpointError):
    kind = "code_not_valid_for_event"


# --- Attendance state machine ---


class AttendanceConflict(CheckpointError):
    """A transition was requested from a state that does not allow it."""

    status_code = 409


class AlreadyRegistered(AttendanceConflict):
    kind = "already_registered"


class NotRegistered(AttendanceConflict):
    kind = "not_registered"


class AlreadyEntered(AttendanceConflict):
    kind = "already_entered"


class NotEntered(AttendanceConflict):
    kind = "not_entered"


class AlreadyExited(AttendanceConflict):
    kind = "already_exited"


# --- Lookups ---


class PersonaNotFound(CheckpointError):
    kind = "persona_not_found"
    status_code = 404


class IdentityRequired(CheckpointError):
    kind = "identity_required"


class SelfReferral(CheckpointError):
    kind = "self_referral"


class EventNotFound(CheckpointError):
    kind = "event_not_found"
    status_code = 404


class CampaignNotFound(CheckpointError):
    kind = "campaign_not_found"
    status_code = 404


class EventInactive(CheckpointError):
    kind = "event_inactive"
    status_code = 409


class EventNotEnded(CheckpointError):
    kind = "event_not_ended"
    status_code = 409


class NotPrivileged(CheckpointError):
    kind = "not_privileged"


# --- Points ---


class AlreadyDistributed(CheckpointError):
    kind = "already_distributed"
    status_code = 409


# --- Fatal ---


class IntegrityFault(CheckpointError):
    """Data is in a state the domain rules cannot produce. Never retried silently."""

    status_code = 500


class AttendanceIntegrityError(IntegrityFault):
    kind = "attendance_integrity"


class CodeCollisionError(IntegrityFault):
    kind = "code_collision"
