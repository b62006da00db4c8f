from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union

from clinicflow.constants import AnalyticsEventType
from clinicflow.models.base import BOOL, Column, DATETIME, ENUM, NUMBER, TableDef, TableRecord

Number = Union[int, float]


@dataclass
class AnalyticsEvent(TableRecord):
    """Append-only operational event. Rows are never updated."""

    TABLE = TableDef(
        name="Analytics",
        key="Timestamp",
        columns=(
            Column("Timestamp", "timestamp", DATETIME, required=True),
            Column("Event Type", "event_type", ENUM, enum=AnalyticsEventType, required=True),
            Column("Patient Name", "patient_name"),
            Column("Urgency Level", "urgency"),
            Column("Appointment Date", "appointment_date"),
            Column("Appointment Time", "appointment_time"),
            Column("Visit Type", "visit_type"),
            Column("Has Appointment", "has_appointment", BOOL),
            Column("External ID", "external_id"),
            Column("Total Bookings", "total_bookings", NUMBER),
            Column("High Risk Triage", "high_risk_triage", NUMBER),
            Column("No Show Rate", "no_show_rate", NUMBER),
            Column("Details", "details"),
        ),
    )

    event_type: AnalyticsEventType
    patient_name: str = ""
    urgency: str = ""
    appointment_date: str = ""
    appointment_time: str = ""
    visit_type: str = ""
    has_appointment: bool = False
    external_id: str = ""
    total_bookings: Optional[Number] = None
    high_risk_triage: Optional[Number] = None
    no_show_rate: Optional[Number] = None
    details: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
