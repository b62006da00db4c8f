from clinicflow.models.base import Column, TableDef, TableRecord
from clinicflow.models.intake import IntakeRecord
from clinicflow.models.appointment import AppointmentRecord, parse_local_datetime
from clinicflow.models.triage import TriageRecord
from clinicflow.models.analytics import AnalyticsEvent

ALL_TABLES = (
    IntakeRecord.TABLE,
    AppointmentRecord.TABLE,
    TriageRecord.TABLE,
    AnalyticsEvent.TABLE,
)

__all__ = [
    "Column",
    "TableDef",
    "TableRecord",
    "IntakeRecord",
    "AppointmentRecord",
    "TriageRecord",
    "AnalyticsEvent",
    "ALL_TABLES",
    "parse_local_datetime",
]
