"""Booking pipeline: appointment created / cancelled / rescheduled events from the booking provider."""

from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from loguru import logger

from clinicflow.config import Settings
from clinicflow.constants import AnalyticsEventType, AppointmentStatus, BookingEventType, DEFAULT_VISIT_TYPE
from clinicflow.exceptions import ConflictError, NotFoundError
from clinicflow.models import AnalyticsEvent, AppointmentRecord
from clinicflow.models.appointment import DATE_FORMAT, TIME_FORMAT
from clinicflow.pipelines.results import BookingResult, StepResult, run_soft_step
from clinicflow.repository import ClinicRepository
from clinicflow.schemas import BookingPayload, BookingWebhook
from clinicflow.services.calendar import GoogleCalendarClient
from clinicflow.services.calendly import CalendlyClient, extract_answers
from clinicflow.services.notifier import Notifier, details_from_appointment


def parse_provider_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class BookingPipeline:
    def __init__(
        self,
        repo: ClinicRepository,
        notifier: Notifier,
        calendar: Optional[GoogleCalendarClient],
        calendly: CalendlyClient,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repo = repo
        self.notifier = notifier
        self.calendar = calendar
        self.calendly = calendly
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _local_slot(self, start_time: Optional[str]) -> Tuple[str, str]:
        """Provider start time as wall-clock date and time in the clinic time zone."""
        start = parse_provider_time(start_time)
        if start is None:
            return "", ""
        local = start.astimezone(self.settings.tz)
        return local.strftime(DATE_FORMAT), local.strftime(TIME_FORMAT)

    async def handle(self, webhook: BookingWebhook) -> BookingResult:
        payload = webhook.payload
        with logger.contextualize(external_event_id=payload.external_event_id):
            logger.info(f"Booking event received: {webhook.event.value}")
            if webhook.event is BookingEventType.CREATED:
                return await self._created(payload)
            if webhook.event is BookingEventType.CANCELLED:
                return await self._cancelled(payload)
            return await self._rescheduled(payload)

    async def _created(self, payload: BookingPayload) -> BookingResult:
        result = BookingResult(event=BookingEventType.CREATED.value, external_event_id=payload.external_event_id)

        if await self.repo.find_appointment(payload.external_event_id) is not None:
            logger.info("Appointment already recorded, ignoring duplicate booking event")
            result.action = "duplicate"
            return result

        visit_type = payload.event.name
        if not visit_type:
            details = await self.calendly.get_event_details(payload.event.uri)
            visit_type = details.get("name") or DEFAULT_VISIT_TYPE

        answers = extract_answers(payload.questions_and_answers)
        slot_date, slot_time = self._local_slot(payload.event.start_time)
        appointment = AppointmentRecord(
            external_event_id=payload.external_event_id,
            patient_name=payload.name,
            email=payload.email,
            phone=payload.phone or answers.get("phone", ""),
            date=slot_date,
            time=slot_time,
            visit_type=visit_type,
            status=AppointmentStatus.SCHEDULED,
            notes=answers.get("reason_for_visit", ""),
            created_at=self._clock(),
        )
        await self.repo.add_appointment(appointment)
        result.action = "created"
        logger.info(f"Appointment recorded for {slot_date or 'unscheduled'} {slot_time}")

        result.add(await self._calendar_step(appointment, answers.get("reason_for_visit", "")))
        result.add(await self._confirmation_step(appointment))
        result.add(await run_soft_step("analytics", lambda: self.repo.record_event(AnalyticsEvent(
            event_type=AnalyticsEventType.APPOINTMENT_BOOKED,
            patient_name=appointment.patient_name,
            appointment_date=appointment.date,
            appointment_time=appointment.time,
            visit_type=appointment.visit_type,
            has_appointment=bool(appointment.date),
            external_id=appointment.external_event_id,
            timestamp=self._clock(),
        ))))
        return result

    async def _calendar_step(self, appointment: AppointmentRecord, reason: str) -> StepResult:
        if not appointment.date or not appointment.time:
            return StepResult.skipped("calendar", "no start time")
        if self.calendar is None or not self.calendar.is_enabled():
            return StepResult.skipped("calendar", "calendar not configured")

        async def create() -> str:
            event = self.calendar.build_event(
                patient_name=appointment.patient_name,
                email=appointment.email,
                phone=appointment.phone,
                date=appointment.date,
                time=appointment.time,
                visit_type=appointment.visit_type,
                reason=reason,
            )
            event_id = await self.calendar.create_event(event)
            await self.repo.update_appointment(appointment.external_event_id, calendar_event_id=event_id)
            return event_id

        return await run_soft_step("calendar", create)

    async def _confirmation_step(self, appointment: AppointmentRecord) -> StepResult:
        if not appointment.email:
            return StepResult.skipped("booking_confirmation", "no email address")

        async def confirm() -> str:
            message_id = await self.notifier.send_booking_confirmation(details_from_appointment(appointment))
            await self.repo.update_appointment(appointment.external_event_id, confirmation_sent=True)
            return message_id

        return await run_soft_step("booking_confirmation", confirm)

    async def _cancelled(self, payload: BookingPayload) -> BookingResult:
        result = BookingResult(event=BookingEventType.CANCELLED.value, external_event_id=payload.external_event_id)
        appointment = await self.repo.find_appointment(payload.external_event_id)
        if appointment is None:
            logger.warning("Cancellation for an unknown appointment, nothing to update")
            result.action = "not_found"
            return result
        if not appointment.status.can_transition(AppointmentStatus.CANCELLED):
            logger.warning(f"Cannot cancel an appointment that is {appointment.status.value}")
            result.action = "ignored"
            return result

        await self.repo.update_appointment(payload.external_event_id, status=AppointmentStatus.CANCELLED)
        logger.info("Appointment cancelled")
        result.action = "cancelled"
        return result

    async def _rescheduled(self, payload: BookingPayload) -> BookingResult:
        result = BookingResult(event=BookingEventType.RESCHEDULED.value, external_event_id=payload.external_event_id)
        appointment = await self.repo.find_appointment(payload.external_event_id)
        if appointment is None:
            logger.warning("Reschedule for an unknown appointment, nothing to update")
            result.action = "not_found"
            return result

        patch = {}
        if appointment.status is AppointmentStatus.SCHEDULED:
            patch["status"] = AppointmentStatus.RESCHEDULED
        elif appointment.status is not AppointmentStatus.RESCHEDULED:
            logger.warning(f"Cannot reschedule an appointment that is {appointment.status.value}")
            result.action = "ignored"
            return result

        slot_date, slot_time = self._local_slot(payload.event.start_time)
        if slot_date:
            patch["date"] = slot_date
            patch["time"] = slot_time
        else:
            logger.warning("Reschedule event carried no new start time")

        if patch:
            await self.repo.update_appointment(payload.external_event_id, **patch)
        logger.info(f"Appointment rescheduled to {slot_date or 'unknown date'} {slot_time}")
        result.action = "rescheduled"
        return result

    async def update_status(self, external_event_id: str, status: AppointmentStatus) -> AppointmentRecord:
        """Move an appointment along the status graph (e.g. completed or no_show after the visit)."""
        appointment = await self.repo.find_appointment(external_event_id)
        if appointment is None:
            raise NotFoundError(f"Appointment {external_event_id} not found")
        if not appointment.status.can_transition(status):
            raise ConflictError(
                f"Cannot move appointment from {appointment.status.value} to {status.value}",
                details={"current": appointment.status.value, "requested": status.value},
            )
        await self.repo.update_appointment(external_event_id, status=status)
        logger.bind(external_event_id=external_event_id).info(
            f"Appointment status {appointment.status.value} -> {status.value}"
        )
        appointment.status = status
        return appointment
