"""
Reminder and follow-up sweeps.

The reminderSent / followUpSent flags are authoritative: a row is re-read
right before its message goes out and is skipped if the flag has flipped in
the meantime. A failed send leaves the flag alone so the next sweep retries.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Awaitable, Callable, List, Optional

from loguru import logger

from clinicflow.config import Settings
from clinicflow.constants import AnalyticsEventType, AppointmentStatus
from clinicflow.exceptions import NotFoundError
from clinicflow.models import AnalyticsEvent, AppointmentRecord
from clinicflow.models.appointment import DATE_FORMAT
from clinicflow.repository import ClinicRepository
from clinicflow.services.notifier import Notifier, details_from_appointment


@dataclass
class RowOutcome:
    external_event_id: str
    patient_name: str
    appointment_date: str
    appointment_time: str
    success: bool
    message_id: str = ""
    error: str = ""


@dataclass
class SweepResult:
    sweep: str
    checked: int = 0
    sent: int = 0
    failed: int = 0
    results: List[RowOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class ReminderEngine:
    def __init__(
        self,
        repo: ClinicRepository,
        notifier: Notifier,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repo = repo
        self.notifier = notifier
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def hours_until(self, appointment: AppointmentRecord, now: datetime) -> Optional[float]:
        start = appointment.starts_at(self.settings.tz)
        if start is None:
            return None
        return (start - now).total_seconds() / 3600

    def needs_reminder(self, appointment: AppointmentRecord, now: datetime) -> bool:
        if not appointment.status.is_upcoming or appointment.reminder_sent:
            return False
        hours = self.hours_until(appointment, now)
        return hours is not None and 0 < hours <= self.settings.reminder_hours_before

    def needs_follow_up(self, appointment: AppointmentRecord, now: datetime) -> bool:
        if appointment.status is not AppointmentStatus.COMPLETED or appointment.follow_up_sent:
            return False
        tz = self.settings.tz
        start = appointment.starts_at(tz)
        if start is None:
            try:
                day = datetime.strptime(appointment.date, DATE_FORMAT).date()
            except ValueError:
                return False
            start = datetime.combine(day, time.min, tzinfo=tz)
        # Yesterday or today in clinic time, and already started
        window_start = datetime.combine(now.astimezone(tz).date() - timedelta(days=1), time.min, tzinfo=tz)
        return window_start <= start <= now

    async def run_reminder_sweep(self) -> SweepResult:
        now = self._clock()
        due = await self.repo.list_appointments(lambda a: self.needs_reminder(a, now))
        logger.info(f"Reminder sweep: {len(due)} appointments due within {self.settings.reminder_hours_before}h")
        return await self._sweep(
            "reminders",
            due,
            still_due=lambda a: self.needs_reminder(a, now),
            send=lambda a: self.notifier.send_reminder(details_from_appointment(a)),
            flag="reminder_sent",
            event_type=AnalyticsEventType.REMINDER_SENT,
        )

    async def run_follow_up_sweep(self) -> SweepResult:
        now = self._clock()
        due = await self.repo.list_appointments(lambda a: self.needs_follow_up(a, now))
        logger.info(f"Follow-up sweep: {len(due)} completed appointments need a follow-up")
        return await self._sweep(
            "follow_ups",
            due,
            still_due=lambda a: self.needs_follow_up(a, now),
            send=lambda a: self.notifier.send_follow_up(details_from_appointment(a)),
            flag="follow_up_sent",
            event_type=AnalyticsEventType.FOLLOW_UP_SENT,
        )

    async def _sweep(
        self,
        name: str,
        due: List[AppointmentRecord],
        still_due: Callable[[AppointmentRecord], bool],
        send: Callable[[AppointmentRecord], Awaitable[str]],
        flag: str,
        event_type: AnalyticsEventType,
    ) -> SweepResult:
        result = SweepResult(sweep=name, checked=len(due))

        for candidate in due:
            with logger.contextualize(external_event_id=candidate.external_event_id, job=name):
                try:
                    current = await self.repo.find_appointment(candidate.external_event_id)
                except Exception as e:
                    result.failed += 1
                    result.results.append(RowOutcome(
                        external_event_id=candidate.external_event_id,
                        patient_name=candidate.patient_name,
                        appointment_date=candidate.date,
                        appointment_time=candidate.time,
                        success=False,
                        error=str(e),
                    ))
                    logger.error(f"Could not re-read row before sending: {e}")
                    continue
                if current is None or not still_due(current):
                    logger.info("Row no longer due, skipping")
                    continue

                outcome = RowOutcome(
                    external_event_id=current.external_event_id,
                    patient_name=current.patient_name,
                    appointment_date=current.date,
                    appointment_time=current.time,
                    success=False,
                )
                try:
                    outcome.message_id = await send(current)
                except Exception as e:
                    outcome.error = str(e)
                    result.failed += 1
                    result.results.append(outcome)
                    logger.error(f"Failed to send {name} message, will retry next sweep: {e}")
                    continue

                outcome.success = True
                result.sent += 1
                result.results.append(outcome)

                try:
                    await self.repo.update_appointment(current.external_event_id, **{flag: True})
                except NotFoundError:
                    logger.warning("Appointment disappeared before its flag could be set")
                except Exception as e:
                    outcome.error = f"sent, but {flag} not recorded: {e}"
                    logger.error(f"Message sent but {flag} flag update failed: {e}")
                    continue

                await self._record(event_type, current)

        logger.info(f"Sweep '{name}' complete: {result.sent} sent, {result.failed} failed")
        return result

    async def _record(self, event_type: AnalyticsEventType, appointment: AppointmentRecord, details: str = "") -> None:
        try:
            await self.repo.record_event(AnalyticsEvent(
                event_type=event_type,
                patient_name=appointment.patient_name,
                appointment_date=appointment.date,
                appointment_time=appointment.time,
                visit_type=appointment.visit_type,
                has_appointment=True,
                external_id=appointment.external_event_id,
                details=details,
                timestamp=self._clock(),
            ))
        except Exception as e:
            logger.warning(f"Analytics event {event_type.value} not recorded: {e}")

    async def schedule_custom_reminder(self, external_event_id: str, hours_before: int = 24) -> dict:
        """Record a request for an extra reminder at a custom lead time."""
        appointment = await self.repo.find_appointment(external_event_id)
        if appointment is None:
            raise NotFoundError(f"Appointment {external_event_id} not found")

        logger.bind(external_event_id=external_event_id).info(
            f"Scheduling custom reminder {hours_before}h before appointment"
        )
        await self._record(
            AnalyticsEventType.CUSTOM_REMINDER_SCHEDULED,
            appointment,
            details=f"reminder_hours={hours_before}",
        )
        return {
            "success": True,
            "message": f"Custom reminder scheduled for {hours_before} hours before appointment",
        }
