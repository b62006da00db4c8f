from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from clinicflow.constants import AppointmentStatus, BookingEventType


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    # Form providers sometimes send phone numbers and ids as numbers
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", coerce_numbers_to_str=True
    )


class InsuranceInfo(CamelModel):
    provider: Optional[str] = None
    id: Optional[str] = None


class EmergencyInfo(CamelModel):
    contact: Optional[str] = None
    phone: Optional[str] = None


class IntakeSubmission(CamelModel):
    """
    An intake form as posted by the form provider.

    Everything is optional here; required fields are enforced by the intake
    pipeline's validation step so that failures share one error shape.
    """
    form_id: Optional[str] = None
    patient_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("patientName", "fullName", "patient_name"))
    email: Optional[str] = None
    dob: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    reason_for_visit: Optional[str] = None
    current_medications: Optional[str] = None
    allergies: Optional[str] = None
    past_conditions: Optional[str] = None
    insurance: InsuranceInfo = Field(default_factory=InsuranceInfo)
    emergency: EmergencyInfo = Field(default_factory=EmergencyInfo)
    appointment_date: Optional[str] = None
    appointment_time: Optional[str] = None
    visit_type: Optional[str] = None
    additional_notes: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def fold_flat_aliases(cls, data: Any) -> Any:
        """Accept insuranceProvider/insuranceId/emergencyContact/emergencyPhone at the top level."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        insurance = dict(data.get("insurance") or {})
        emergency = dict(data.get("emergency") or {})
        if "insuranceProvider" in data:
            insurance.setdefault("provider", data.pop("insuranceProvider"))
        if "insuranceId" in data:
            insurance.setdefault("id", data.pop("insuranceId"))
        if "emergencyContact" in data:
            emergency.setdefault("contact", data.pop("emergencyContact"))
        if "emergencyPhone" in data:
            emergency.setdefault("phone", data.pop("emergencyPhone"))
        data["insurance"] = insurance
        data["emergency"] = emergency
        return data


class BookingEventRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    uri: Optional[str] = None
    name: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None


class BookingPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    external_event_id: str = Field(validation_alias=AliasChoices("externalEventId", "external_event_id", "uuid"))
    name: str = ""
    email: str = ""
    phone: Optional[str] = Field(default=None, validation_alias=AliasChoices("phone", "phone_number"))
    created_at: Optional[str] = None
    event: BookingEventRef = Field(default_factory=BookingEventRef)
    questions_and_answers: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("external_event_id")
    @classmethod
    def non_empty_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("externalEventId is required")
        return v.strip()


class BookingWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: BookingEventType
    payload: BookingPayload

    @field_validator("event", mode="before")
    @classmethod
    def normalize_event(cls, v: Any) -> Any:
        """Accept the provider's own names, e.g. invitee.created / invitee.canceled."""
        if isinstance(v, str):
            v = v.strip().lower()
            if v.startswith("invitee."):
                v = v[len("invitee."):]
            if v == "canceled":
                v = "cancelled"
        return v


class StatusUpdateRequest(BaseModel):
    status: AppointmentStatus


class CustomReportRequest(CamelModel):
    start_date: str
    end_date: str


class CustomReminderRequest(CamelModel):
    external_event_id: str = Field(min_length=1)
    hours_before: int = Field(default=24, gt=0)


class IntakeBatchRequest(BaseModel):
    submissions: List[IntakeSubmission] = Field(..., max_length=100)


class IntakeResponse(CamelModel):
    success: bool = True
    form_id: str
    urgency_level: Optional[str] = None
    processed_by: Optional[str] = None
    degraded: bool = False
    duplicate: bool = False
    warnings: List[str] = Field(default_factory=list)


class BookingResponse(CamelModel):
    success: bool = True
    event: str
    external_event_id: str
    action: str
    warnings: List[str] = Field(default_factory=list)
