"""Shared fixtures: fixed clock, in-memory store, outbox transport and a scripted model."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
import pytest_asyncio

from clinicflow.config import ClinicIdentity, ModelSettings, Settings
from clinicflow.constants import AppointmentStatus
from clinicflow.exceptions import ModelError, TransportError, Unavailable
from clinicflow.models import AppointmentRecord
from clinicflow.repository import ClinicRepository
from clinicflow.resilience import reset_all_circuits
from clinicflow.services.calendar import GoogleCalendarClient
from clinicflow.services.calendly import CalendlyClient
from clinicflow.services.llm import CompletionClient
from clinicflow.services.notifier import Notifier
from clinicflow.services.prompts import PromptRenderer
from clinicflow.services.transports import Message, OutboxTransport
from clinicflow.services.triage import TriageClassifier
from clinicflow.store import InMemoryStore

CLINIC_TZ = "America/New_York"
# Wednesday 2024-03-13, 11:00 in clinic time (EDT)
NOW = datetime(2024, 3, 13, 15, 0, tzinfo=timezone.utc)

CLINIC = ClinicIdentity(
    name="Riverside Family Clinic",
    email="clinic@riverside.example",
    phone="555-0100",
    address="12 River Road, Springfield",
    website="https://riverside.example",
    staff_email="staff@riverside.example",
    admin_email="admin@riverside.example",
)

BASE_SETTINGS = Settings(
    env="test",
    clinic=CLINIC,
    timezone=CLINIC_TZ,
    reminder_hours_before=48,
    max_pipeline_retries=3,
    retry_base_delay_seconds=1.0,
    store_backend="memory",
    scheduler_enabled=False,
    webhook_rate_limit="1000/minute",
)


def make_settings(**overrides) -> Settings:
    return replace(BASE_SETTINGS, **overrides)


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ScriptedModel(CompletionClient):
    """Returns queued responses in order; an exception in the queue is raised instead."""

    def __init__(self, responses: Optional[List] = None):
        super().__init__(ModelSettings(api_key="test-key", timeout_ms=1000))
        self.responses = list(responses or [])
        self.prompts: List[str] = []

    @property
    def name(self) -> str:
        return "scripted"

    async def _request(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise ModelError("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeCalendar(GoogleCalendarClient):
    def __init__(self, timezone_name: str = CLINIC_TZ, fail: bool = False, enabled: bool = True):
        super().__init__(None, "clinic-calendar" if enabled else None, "token", timezone_name)
        self.fail = fail
        self.created: List[dict] = []

    async def create_event(self, event: dict) -> str:
        if self.fail:
            raise Unavailable("Google Calendar error 500: backend error")
        self.created.append(event)
        return f"cal-{len(self.created)}"


class FailingTransport(OutboxTransport):
    """Outbox that raises TransportError for the first `failures` sends of the given kinds."""

    def __init__(self, failures: int = 1, kinds=None):
        super().__init__()
        self.failures = failures
        self.kinds = set(kinds or [])
        self.attempts = 0

    async def send(self, message: Message) -> str:
        if not self.kinds or message.kind in self.kinds:
            self.attempts += 1
            if self.failures > 0:
                self.failures -= 1
                raise TransportError(f"SMTP delivery of {message.kind.value} to {message.to} failed")
        return await super().send(message)


async def no_sleep(delay: float) -> None:
    return None


def make_appointment(**overrides) -> AppointmentRecord:
    values = dict(
        external_event_id="evt-1",
        patient_name="Jane Doe",
        email="jane@example.com",
        phone="555-0101",
        date="2024-03-14",
        time="11:00",
        visit_type="Annual Physical",
        status=AppointmentStatus.SCHEDULED,
        created_at=NOW,
    )
    values.update(overrides)
    return AppointmentRecord(**values)


def intake_payload(**overrides) -> dict:
    payload = {
        "formId": "F1",
        "patientName": "Jane Doe",
        "email": "j@x.com",
        "dob": "1990-01-01",
        "reasonForVisit": "annual physical",
        "appointmentDate": "2025-06-01",
        "appointmentTime": "09:00",
    }
    payload.update(overrides)
    return payload


@pytest.fixture(autouse=True)
def reset_circuits():
    reset_all_circuits()
    yield
    reset_all_circuits()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def outbox():
    return OutboxTransport()


@pytest.fixture
def notifier(outbox, settings):
    return Notifier(outbox, settings.clinic)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest_asyncio.fixture
async def repo(store):
    repository = ClinicRepository(store)
    await repository.initialize()
    return repository


@pytest.fixture
def model():
    return ScriptedModel()


@pytest.fixture
def prompts(settings):
    return PromptRenderer(settings.clinic.name)


@pytest.fixture
def classifier(model, prompts, clock):
    return TriageClassifier(model, prompts, clock=clock)


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def calendly():
    return CalendlyClient(None)
