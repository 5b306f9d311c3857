from __future__ import annotations

from enum import Enum

from .models import ChangeType, Severity


class ActivityAction(str, Enum):
    PATIENT_CREATED = "PATIENT_CREATED"
    PATIENT_UPDATED = "PATIENT_UPDATED"
    PATIENT_ARCHIVED = "PATIENT_ARCHIVED"
    PATIENT_RESTORED = "PATIENT_RESTORED"
    DELEGATION_CREATED = "DELEGATION_CREATED"
    DELEGATION_UPDATED = "DELEGATION_UPDATED"
    DELEGATION_DELETED = "DELEGATION_DELETED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: object) -> ActivityAction:
        try:
            action = cls(str(raw or "").strip().upper())
        except ValueError:
            return cls.UNKNOWN
        return action

    @property
    def label(self) -> str | None:
        return ACTIVITY_LABELS[self]


ACTIVITY_LABELS: dict[ActivityAction, str | None] = {
    ActivityAction.PATIENT_CREATED: "New patient created",
    ActivityAction.PATIENT_UPDATED: "Patient updated",
    ActivityAction.PATIENT_ARCHIVED: "Patient archived",
    ActivityAction.PATIENT_RESTORED: "Patient restored",
    ActivityAction.DELEGATION_CREATED: "New delegation",
    ActivityAction.DELEGATION_UPDATED: "Delegation updated",
    ActivityAction.DELEGATION_DELETED: "Delegation deleted",
    ActivityAction.UNKNOWN: None,
}

# Checked at import so a new enum member without a label fails fast.
_missing = [a for a in ActivityAction if a not in ACTIVITY_LABELS]
if _missing:
    raise RuntimeError(f"activity actions without label: {_missing}")


class QueueStatus(str, Enum):
    PRESENT = "present"
    WAITING = "waiting"
    CALLED = "called"
    IN_CONSULTATION = "in_consultation"
    AWAITING_EXAM = "awaiting_exam"
    COMPLETED = "completed"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


# status -> (key prefix, message, severity) for status transitions worth a toast
QUEUE_TRANSITIONS: dict[QueueStatus, tuple[str, str, Severity]] = {
    QueueStatus.CALLED: ("queue-called", "Patient called", Severity.INFO),
    QueueStatus.IN_CONSULTATION: ("queue-consultation", "Consultation started", Severity.SUCCESS),
    QueueStatus.NO_SHOW: ("queue-noshow", "Patient absent", Severity.WARNING),
}

# Delegation table operations have fixed keys and text.
DELEGATION_MESSAGES: dict[ChangeType, tuple[str, str]] = {
    ChangeType.INSERT: ("delegation-new", "New delegation created"),
    ChangeType.UPDATE: ("delegation-update", "Delegation modified"),
    ChangeType.DELETE: ("delegation-delete", "Delegation deleted"),
}

NEW_PATIENT_FALLBACK = "New patient"
PATIENT_FALLBACK = "Patient"
CANCELLED_FALLBACK = "Appointment cancelled"
