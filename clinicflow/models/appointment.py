from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from clinicflow.constants import AppointmentStatus
from clinicflow.models.base import BOOL, Column, DATETIME, ENUM, TableDef, TableRecord

DATE_FORMAT = "%Y-%m-%d"
TIME_FORMAT = "%H:%M"


def parse_local_datetime(date_str: str, time_str: str, tz: ZoneInfo) -> Optional[datetime]:
    """Combine a wall-clock date and time in the clinic time zone; None if unparseable."""
    if not date_str or not time_str:
        return None
    try:
        naive = datetime.strptime(f"{date_str.strip()} {time_str.strip()}", f"{DATE_FORMAT} {TIME_FORMAT}")
    except ValueError:
        return None
    return naive.replace(tzinfo=tz)


@dataclass
class AppointmentRecord(TableRecord):
    """One booked visit, keyed by the booking provider's external event id."""

    TABLE = TableDef(
        name="Appointments",
        key="External Event ID",
        columns=(
            Column("Timestamp", "created_at", DATETIME, required=True),
            Column("Patient Name", "patient_name"),
            Column("Email", "email"),
            Column("Phone", "phone"),
            Column("Appointment Date", "date"),
            Column("Appointment Time", "time"),
            Column("Visit Type", "visit_type"),
            Column("Status", "status", ENUM, enum=AppointmentStatus, required=True),
            Column("External Event ID", "external_event_id", required=True),
            Column("Calendar Event ID", "calendar_event_id"),
            Column("Reminder Sent", "reminder_sent", BOOL),
            Column("Confirmation Sent", "confirmation_sent", BOOL),
            Column("Notes", "notes"),
            Column("Follow Up Sent", "follow_up_sent", BOOL),
        ),
    )

    external_event_id: str
    patient_name: str = ""
    email: str = ""
    phone: str = ""
    date: str = ""
    time: str = ""
    visit_type: str = ""
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    calendar_event_id: str = ""
    reminder_sent: bool = False
    confirmation_sent: bool = False
    notes: str = ""
    follow_up_sent: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def starts_at(self, tz: ZoneInfo) -> Optional[datetime]:
        return parse_local_datetime(self.date, self.time, tz)
