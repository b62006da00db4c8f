from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List

from clinicflow.constants import IntakeStatus
from clinicflow.models.base import Column, DATETIME, ENUM, TableDef, TableRecord


@dataclass
class IntakeRecord(TableRecord):
    """A patient-submitted intake form as persisted in the Intake table."""

    TABLE = TableDef(
        name="Intake",
        key="Form ID",
        columns=(
            Column("Timestamp", "created_at", DATETIME, required=True),
            Column("Form ID", "form_id", required=True),
            Column("Full Name", "patient_name", required=True),
            Column("DOB", "dob"),
            Column("Email", "email"),
            Column("Phone", "phone"),
            Column("Address", "address"),
            Column("Reason for Visit", "reason_for_visit"),
            Column("Current Medications", "current_medications"),
            Column("Allergies", "allergies"),
            Column("Past Conditions", "past_conditions"),
            Column("Insurance Provider", "insurance_provider"),
            Column("Insurance ID", "insurance_id"),
            Column("Emergency Contact", "emergency_contact"),
            Column("Emergency Phone", "emergency_phone"),
            Column("Appointment Date", "appointment_date"),
            Column("Appointment Time", "appointment_time"),
            Column("Visit Type", "visit_type"),
            Column("Additional Notes", "additional_notes"),
            Column("Status", "status", ENUM, enum=IntakeStatus, required=True),
        ),
    )

    form_id: str
    patient_name: str
    dob: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    reason_for_visit: str = ""
    current_medications: str = ""
    allergies: str = ""
    past_conditions: str = ""
    insurance_provider: str = ""
    insurance_id: str = ""
    emergency_contact: str = ""
    emergency_phone: str = ""
    appointment_date: str = ""
    appointment_time: str = ""
    visit_type: str = ""
    additional_notes: str = ""
    status: IntakeStatus = IntakeStatus.NEW
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def has_appointment(self) -> bool:
        return bool(self.appointment_date and self.appointment_time)

    def free_text_fields(self) -> List[str]:
        """Free-text answers scanned for risk phrases."""
        return [
            self.reason_for_visit,
            self.current_medications,
            self.allergies,
            self.past_conditions,
            self.additional_notes,
        ]
