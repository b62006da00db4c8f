from enum import Enum
from typing import Dict, FrozenSet


class IntakeStatus(str, Enum):
    NEW = "new"
    PROCESSED = "processed"
    FAILED = "failed"

    def can_transition(self, target: "IntakeStatus") -> bool:
        return target in _INTAKE_TRANSITIONS[self]


# failed -> processed covers a later successful retry of the same formId
_INTAKE_TRANSITIONS: Dict[IntakeStatus, FrozenSet[IntakeStatus]] = {
    IntakeStatus.NEW: frozenset({IntakeStatus.PROCESSED, IntakeStatus.FAILED}),
    IntakeStatus.FAILED: frozenset({IntakeStatus.PROCESSED}),
    IntakeStatus.PROCESSED: frozenset(),
}


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"

    @property
    def is_upcoming(self) -> bool:
        return self in (AppointmentStatus.SCHEDULED, AppointmentStatus.RESCHEDULED)

    def can_transition(self, target: "AppointmentStatus") -> bool:
        return target in _APPOINTMENT_TRANSITIONS[self]


_CLOSED = frozenset()
_FROM_UPCOMING = frozenset({
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})

# scheduled is the root; completed, cancelled and no_show are terminal
_APPOINTMENT_TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: _FROM_UPCOMING | {AppointmentStatus.RESCHEDULED},
    AppointmentStatus.RESCHEDULED: _FROM_UPCOMING,
    AppointmentStatus.COMPLETED: _CLOSED,
    AppointmentStatus.CANCELLED: _CLOSED,
    AppointmentStatus.NO_SHOW: _CLOSED,
}


class Urgency(str, Enum):
    LOW = "Low"
    MODERATE = "Moderate"
    HIGH = "High"


class ClassificationPath(str, Enum):
    MODEL = "ai_model"
    PARTIAL = "ai_partial"
    HEURISTIC = "keyword_heuristic"
    MANUAL_REVIEW = "manual_review"

    @property
    def is_degraded(self) -> bool:
        return self is not ClassificationPath.MODEL


class AnalyticsEventType(str, Enum):
    INTAKE_FORM_PROCESSED = "intake_form_processed"
    APPOINTMENT_BOOKED = "appointment_booked"
    REMINDER_SENT = "reminder_sent"
    FOLLOW_UP_SENT = "follow_up_sent"
    WEEKLY_REPORT_GENERATED = "weekly_report_generated"
    CUSTOM_REMINDER_SCHEDULED = "custom_reminder_scheduled"


class BookingEventType(str, Enum):
    CREATED = "created"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"


class MessageKind(str, Enum):
    CONFIRMATION = "confirmation"
    BOOKING_CONFIRMATION = "booking_confirmation"
    REMINDER = "reminder"
    FOLLOW_UP = "follow_up"
    TRIAGE_ALERT = "triage_alert"
    WEEKLY_REPORT = "weekly_report"
    ERROR_ALERT = "error_alert"


class DuplicateIntakePolicy(str, Enum):
    IGNORE = "ignore"
    REJECT = "reject"


DEFAULT_VISIT_TYPE = "General Consultation"
