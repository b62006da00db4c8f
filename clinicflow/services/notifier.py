"""Typed outbound notifications: one operation per message kind.

No retry logic lives here; callers own their retry policy. Every send either
returns a message id or raises TransportError.
"""

from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger

from clinicflow.config import ClinicIdentity
from clinicflow.constants import MessageKind, Urgency
from clinicflow.exceptions import TransportError
from clinicflow.models import AppointmentRecord, IntakeRecord
from clinicflow.services import templates
from clinicflow.services.templates import (
    AppointmentDetails,
    ConfirmationPayload,
    ErrorPayload,
    RenderedMessage,
    ReportPayload,
    TriageAlertPayload,
)
from clinicflow.services.transports import Message, Transport

# Max 1 error alert per error type per 5 minutes
ERROR_ALERT_COOLDOWN_SECONDS = 300
MAX_ERROR_TYPES = 1000


def details_from_intake(intake: IntakeRecord) -> AppointmentDetails:
    return AppointmentDetails(
        patient_name=intake.patient_name,
        email=intake.email,
        date=intake.appointment_date,
        time=intake.appointment_time,
        visit_type=intake.visit_type,
        phone=intake.phone,
    )


def details_from_appointment(appointment: AppointmentRecord) -> AppointmentDetails:
    return AppointmentDetails(
        patient_name=appointment.patient_name,
        email=appointment.email,
        date=appointment.date,
        time=appointment.time,
        visit_type=appointment.visit_type,
        phone=appointment.phone,
    )


class Notifier:
    def __init__(self, transport: Transport, clinic: ClinicIdentity):
        self.transport = transport
        self.clinic = clinic
        self._last_error_alerts: "OrderedDict[str, datetime]" = OrderedDict()

    async def _dispatch(
        self, kind: MessageKind, to: str, rendered: RenderedMessage, priority: str = "normal"
    ) -> str:
        if not to:
            raise TransportError(f"No recipient for {kind.value} message")
        message = Message(
            kind=kind,
            to=to,
            subject=rendered.subject,
            html=rendered.html,
            text=rendered.text,
            priority=priority,
        )
        return await self.transport.send(message)

    async def send_confirmation(self, payload: ConfirmationPayload) -> str:
        """Patient confirmation after an intake form, with the safety notice for High urgency."""
        rendered = templates.render_confirmation(payload, self.clinic)
        return await self._dispatch(MessageKind.CONFIRMATION, payload.appointment.email, rendered)

    async def send_booking_confirmation(self, appointment: AppointmentDetails) -> str:
        rendered = templates.render_confirmation(ConfirmationPayload(appointment), self.clinic, booking=True)
        return await self._dispatch(MessageKind.BOOKING_CONFIRMATION, appointment.email, rendered)

    async def send_reminder(self, appointment: AppointmentDetails) -> str:
        rendered = templates.render_reminder(appointment, self.clinic)
        return await self._dispatch(MessageKind.REMINDER, appointment.email, rendered)

    async def send_follow_up(self, appointment: AppointmentDetails) -> str:
        rendered = templates.render_follow_up(appointment, self.clinic)
        return await self._dispatch(MessageKind.FOLLOW_UP, appointment.email, rendered)

    async def send_triage_alert(self, alert: TriageAlertPayload) -> str:
        rendered = templates.render_triage_alert(alert, self.clinic)
        priority = "high" if alert.urgency is Urgency.HIGH else "normal"
        return await self._dispatch(MessageKind.TRIAGE_ALERT, self.clinic.staff_recipient, rendered, priority)

    async def send_weekly_report(self, report: ReportPayload) -> str:
        rendered = templates.render_weekly_report(report, self.clinic)
        return await self._dispatch(MessageKind.WEEKLY_REPORT, self.clinic.staff_recipient, rendered)

    async def send_error_alert(
        self,
        error_type: str,
        message: str,
        stack: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """Alert the admin channel. Returns None when rate limited."""
        if self._is_rate_limited(error_type):
            logger.debug(f"Error alert rate limited (5 min cooldown): {error_type}")
            return None

        # Record before sending so a failing transport cannot cause an alert storm
        self._record_error_alert(error_type)
        payload = ErrorPayload(error_type=error_type, message=message, stack=stack or "", context=context or {})
        rendered = templates.render_error_alert(payload, self.clinic)
        return await self._dispatch(MessageKind.ERROR_ALERT, self.clinic.admin_recipient, rendered, "high")

    def _is_rate_limited(self, error_type: str) -> bool:
        last_time = self._last_error_alerts.get(error_type)
        if last_time is None:
            return False
        elapsed = (datetime.now(timezone.utc) - last_time).total_seconds()
        return elapsed < ERROR_ALERT_COOLDOWN_SECONDS

    def _record_error_alert(self, error_type: str) -> None:
        if len(self._last_error_alerts) >= MAX_ERROR_TYPES:
            self._last_error_alerts.popitem(last=False)
        self._last_error_alerts[error_type] = datetime.now(timezone.utc)
