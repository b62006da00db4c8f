from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List

from clinicflow.constants import ClassificationPath, Urgency
from clinicflow.models.base import Column, DATETIME, ENUM, LIST, TableDef, TableRecord


@dataclass
class TriageRecord(TableRecord):
    TABLE = TableDef(
        name="Triage",
        key="Form ID",
        columns=(
            Column("Timestamp", "created_at", DATETIME, required=True),
            Column("Form ID", "form_id", required=True),
            Column("Patient Name", "patient_name"),
            Column("Appointment Date", "appointment_date"),
            Column("Reason for Visit", "reason_for_visit"),
            Column("AI Summary", "summary"),
            Column("Urgency Level", "urgency", ENUM, enum=Urgency, required=True),
            Column("Risk Keywords", "risk_keywords", LIST),
            Column("Recommendations", "recommendations"),
            Column("Follow Up Notes", "follow_up_notes"),
            Column("Processed By", "processed_by", ENUM, enum=ClassificationPath, required=True),
        ),
    )

    form_id: str
    urgency: Urgency
    processed_by: ClassificationPath
    patient_name: str = ""
    appointment_date: str = ""
    reason_for_visit: str = ""
    summary: str = ""
    risk_keywords: List[str] = field(default_factory=list)
    recommendations: str = ""
    follow_up_notes: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_degraded(self) -> bool:
        return self.processed_by.is_degraded
