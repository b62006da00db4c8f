"""
Tests for BookingPipeline - created, cancelled and rescheduled booking events.
"""

import hashlib
import hmac

import pytest

from clinicflow.constants import AnalyticsEventType, AppointmentStatus, BookingEventType, MessageKind
from clinicflow.exceptions import ConflictError, NotFoundError
from clinicflow.pipelines.booking import BookingPipeline, parse_provider_time
from clinicflow.pipelines.results import StepOutcome
from clinicflow.schemas import BookingWebhook
from clinicflow.services.calendly import CalendlyClient, extract_answers

from conftest import FakeCalendar, make_appointment


def webhook(event: str = "invitee.created", /, **payload_overrides) -> BookingWebhook:
    payload = {
        "uuid": "evt-100",
        "name": "John Smith",
        "email": "john@example.com",
        "event": {
            "uri": "https://api.calendly.com/scheduled_events/abc",
            "name": "New Patient Visit",
            "start_time": "2024-03-15T14:30:00Z",
        },
        "questions_and_answers": [
            {"question": "Phone number", "answer": "555-0123"},
            {"question": "Reason for visit?", "answer": "Back pain"},
        ],
    }
    payload.update(payload_overrides)
    return BookingWebhook.model_validate({"event": event, "payload": payload})


@pytest.fixture
def pipeline(repo, notifier, calendar, calendly, settings, clock):
    return BookingPipeline(repo, notifier, calendar, calendly, settings, clock=clock)


class TestWebhookSchema:
    @pytest.mark.parametrize("raw,expected", [
        ("invitee.created", BookingEventType.CREATED),
        ("created", BookingEventType.CREATED),
        ("invitee.canceled", BookingEventType.CANCELLED),
        ("cancelled", BookingEventType.CANCELLED),
        ("Rescheduled", BookingEventType.RESCHEDULED),
    ])
    def test_event_names_normalized(self, raw, expected):
        assert webhook(raw).event is expected

    def test_external_id_aliases(self):
        hook = BookingWebhook.model_validate({
            "event": "created",
            "payload": {"externalEventId": "  evt-7  ", "phone_number": "555"},
        })
        assert hook.payload.external_event_id == "evt-7"
        assert hook.payload.phone == "555"

    def test_provider_time_parsing(self):
        assert parse_provider_time("2024-03-15T14:30:00Z").hour == 14
        assert parse_provider_time("garbage") is None
        assert parse_provider_time(None) is None

    def test_answers_are_mapped(self):
        answers = extract_answers([
            {"question": "Best phone number", "answer": "555-0123"},
            {"question": "Any allergies?", "answer": "Penicillin"},
            {"question": "Insurance provider", "answer": ""},
        ])
        assert answers == {"phone": "555-0123", "allergies": "Penicillin"}


class TestCreated:
    @pytest.mark.asyncio
    async def test_created_books_appointment_in_clinic_time(self, pipeline, repo, outbox, calendar):
        result = await pipeline.handle(webhook())

        assert result.action == "created"
        appointment = await repo.find_appointment("evt-100")
        # 14:30 UTC is 10:30 EDT
        assert (appointment.date, appointment.time) == ("2024-03-15", "10:30")
        assert appointment.status is AppointmentStatus.SCHEDULED
        assert appointment.visit_type == "New Patient Visit"
        assert appointment.phone == "555-0123"
        assert appointment.notes == "Back pain"
        assert appointment.confirmation_sent is True
        assert appointment.calendar_event_id == "cal-1"
        assert calendar.created[0]["start"]["dateTime"].startswith("2024-03-15T10:30:00")

        assert len(outbox.of_kind(MessageKind.BOOKING_CONFIRMATION)) == 1
        events = await repo.list_events()
        assert [e.event_type for e in events] == [AnalyticsEventType.APPOINTMENT_BOOKED]

    @pytest.mark.asyncio
    async def test_duplicate_event_is_ignored(self, pipeline, repo, outbox):
        await pipeline.handle(webhook())
        result = await pipeline.handle(webhook())

        assert result.action == "duplicate"
        assert len(await repo.list_appointments()) == 1
        assert len(outbox.sent) == 1

    @pytest.mark.asyncio
    async def test_missing_event_name_uses_default_visit_type(self, pipeline, repo):
        await pipeline.handle(webhook(event={"uri": "abc", "start_time": "2024-03-15T14:30:00Z"}))

        appointment = await repo.find_appointment("evt-100")
        assert appointment.visit_type == "General Consultation"

    @pytest.mark.asyncio
    async def test_no_start_time_leaves_slot_blank(self, pipeline, repo, calendar):
        result = await pipeline.handle(webhook(event={"name": "Consult"}))

        appointment = await repo.find_appointment("evt-100")
        assert (appointment.date, appointment.time) == ("", "")
        assert result.step("calendar").outcome is StepOutcome.SKIPPED
        assert calendar.created == []

    @pytest.mark.asyncio
    async def test_calendar_failure_keeps_booking(self, repo, notifier, calendly, settings, clock):
        pipeline = BookingPipeline(repo, notifier, FakeCalendar(fail=True), calendly, settings, clock=clock)

        result = await pipeline.handle(webhook())

        assert result.step("calendar").outcome is StepOutcome.FAILED
        assert result.step("booking_confirmation").succeeded
        appointment = await repo.find_appointment("evt-100")
        assert appointment.calendar_event_id == ""

    @pytest.mark.asyncio
    async def test_no_email_skips_confirmation(self, pipeline, repo, outbox):
        result = await pipeline.handle(webhook(email=""))

        assert result.step("booking_confirmation").outcome is StepOutcome.SKIPPED
        assert len(outbox.sent) == 0
        assert (await repo.find_appointment("evt-100")).confirmation_sent is False


class TestCancelAndReschedule:
    @pytest.mark.asyncio
    async def test_cancel(self, pipeline, repo):
        await repo.add_appointment(make_appointment(external_event_id="evt-100"))

        result = await pipeline.handle(webhook("invitee.canceled"))

        assert result.action == "cancelled"
        assert (await repo.find_appointment("evt-100")).status is AppointmentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_unknown_is_not_an_error(self, pipeline):
        result = await pipeline.handle(webhook("canceled"))
        assert result.action == "not_found"

    @pytest.mark.asyncio
    async def test_cancel_completed_is_ignored(self, pipeline, repo):
        await repo.add_appointment(make_appointment(external_event_id="evt-100", status=AppointmentStatus.COMPLETED))

        result = await pipeline.handle(webhook("cancelled"))

        assert result.action == "ignored"
        assert (await repo.find_appointment("evt-100")).status is AppointmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_reschedule_moves_slot(self, pipeline, repo):
        await repo.add_appointment(make_appointment(external_event_id="evt-100", reminder_sent=True))

        result = await pipeline.handle(webhook(
            "rescheduled", event={"start_time": "2024-03-20T13:00:00Z"}
        ))

        appointment = await repo.find_appointment("evt-100")
        assert result.action == "rescheduled"
        assert appointment.status is AppointmentStatus.RESCHEDULED
        assert (appointment.date, appointment.time) == ("2024-03-20", "09:00")
        assert appointment.reminder_sent is True

    @pytest.mark.asyncio
    async def test_second_reschedule_updates_time_only(self, pipeline, repo):
        await repo.add_appointment(make_appointment(external_event_id="evt-100", status=AppointmentStatus.RESCHEDULED))

        await pipeline.handle(webhook("rescheduled", event={"start_time": "2024-03-21T15:00:00Z"}))

        appointment = await repo.find_appointment("evt-100")
        assert appointment.status is AppointmentStatus.RESCHEDULED
        assert appointment.date == "2024-03-21"


class TestStatusUpdates:
    @pytest.mark.asyncio
    async def test_completed_after_visit(self, pipeline, repo):
        await repo.add_appointment(make_appointment())

        appointment = await pipeline.update_status("evt-1", AppointmentStatus.COMPLETED)

        assert appointment.status is AppointmentStatus.COMPLETED
        assert (await repo.find_appointment("evt-1")).status is AppointmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_terminal_status_cannot_change(self, pipeline, repo):
        await repo.add_appointment(make_appointment(status=AppointmentStatus.NO_SHOW))

        with pytest.raises(ConflictError) as exc_info:
            await pipeline.update_status("evt-1", AppointmentStatus.COMPLETED)

        assert exc_info.value.details == {"current": "no_show", "requested": "completed"}

    @pytest.mark.asyncio
    async def test_unknown_appointment(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.update_status("missing", AppointmentStatus.COMPLETED)


class TestSignature:
    BODY = b'{"event": "invitee.created"}'

    def sign(self, secret: str, payload: bytes) -> str:
        return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()

    def test_no_secret_accepts_everything(self):
        assert CalendlyClient(None).verify_signature(self.BODY, None)

    def test_bare_digest(self):
        client = CalendlyClient(None, webhook_secret="s3cret")
        assert client.verify_signature(self.BODY, self.sign("s3cret", self.BODY))
        assert not client.verify_signature(self.BODY, self.sign("other", self.BODY))

    def test_timestamped_header(self):
        client = CalendlyClient(None, webhook_secret="s3cret")
        digest = self.sign("s3cret", b"1700000000." + self.BODY)

        assert client.verify_signature(self.BODY, f"t=1700000000, v1={digest}")

    def test_missing_signature_rejected(self):
        assert not CalendlyClient(None, webhook_secret="s3cret").verify_signature(self.BODY, "")

    @pytest.mark.asyncio
    async def test_event_lookup_without_token_falls_back(self):
        details = await CalendlyClient(None).get_event_details("https://api.calendly.com/scheduled_events/x")
        assert details == {"name": "General Consultation"}
