"""
Tests for the tabular stores and the typed repository on top of them.
"""

import zipfile

import pytest
from openpyxl import load_workbook

from clinicflow.constants import AnalyticsEventType, AppointmentStatus, IntakeStatus, Urgency, ClassificationPath
from clinicflow.exceptions import FatalError, NotFoundError, StoreUnavailable
from clinicflow.models import AnalyticsEvent, AppointmentRecord, IntakeRecord, TriageRecord
from clinicflow.repository import ClinicRepository
from clinicflow.store import InMemoryStore, WorkbookStore

from conftest import NOW, make_appointment


def make_intake(**overrides) -> IntakeRecord:
    values = dict(
        form_id="F1",
        patient_name="Jane Doe",
        dob="1990-01-01",
        email="jane@example.com",
        reason_for_visit="annual physical",
        appointment_date="2025-06-01",
        appointment_time="09:00",
        created_at=NOW,
    )
    values.update(overrides)
    return IntakeRecord(**values)


class TestInMemoryStore:
    """Row-level behaviour of the process-local store."""

    @pytest.mark.asyncio
    async def test_append_returns_row_ids_in_order(self):
        store = InMemoryStore()
        await store.ensure_schema([AppointmentRecord.TABLE])

        first = await store.append("Appointments", {"External Event ID": "a"})
        second = await store.append("Appointments", {"External Event ID": "b"})

        assert (first, second) == (1, 2)
        rows = await store.scan("Appointments")
        assert [r["External Event ID"] for r in rows] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_unknown_columns_are_dropped(self):
        store = InMemoryStore()
        await store.ensure_schema([AppointmentRecord.TABLE])

        await store.append("Appointments", {"External Event ID": "a", "Shoe Size": 42})

        row = (await store.scan("Appointments"))[0]
        assert "Shoe Size" not in row

    @pytest.mark.asyncio
    async def test_missing_table_is_unavailable(self):
        store = InMemoryStore()
        with pytest.raises(StoreUnavailable):
            await store.scan("Appointments")

    @pytest.mark.asyncio
    async def test_update_where_patches_first_match(self):
        store = InMemoryStore()
        await store.ensure_schema([AppointmentRecord.TABLE])
        await store.append("Appointments", {"External Event ID": "a", "Reminder Sent": "No"})

        row_id = await store.update_where("Appointments", "External Event ID", "a", {"Reminder Sent": "Yes"})

        assert row_id == 1
        assert (await store.scan("Appointments"))[0]["Reminder Sent"] == "Yes"

    @pytest.mark.asyncio
    async def test_update_where_unknown_key_raises(self):
        store = InMemoryStore()
        await store.ensure_schema([AppointmentRecord.TABLE])
        with pytest.raises(NotFoundError):
            await store.update_where("Appointments", "External Event ID", "missing", {"Notes": "x"})

    @pytest.mark.asyncio
    async def test_scan_returns_copies(self):
        store = InMemoryStore()
        await store.ensure_schema([AppointmentRecord.TABLE])
        await store.append("Appointments", {"External Event ID": "a", "Notes": "original"})

        row = (await store.scan("Appointments"))[0]
        row["Notes"] = "mutated"

        assert (await store.scan("Appointments"))[0]["Notes"] == "original"


class TestWorkbookStore:
    """The spreadsheet backend keeps the same contract and persists to disk."""

    @pytest.mark.asyncio
    async def test_schema_creates_sheets_with_headers(self, tmp_path):
        path = tmp_path / "clinic.xlsx"
        repo = ClinicRepository(WorkbookStore(str(path)))
        await repo.initialize()

        wb = load_workbook(path)
        assert set(wb.sheetnames) == {"Intake", "Appointments", "Triage", "Analytics"}
        headers = [c.value for c in wb["Appointments"][1]]
        assert headers == AppointmentRecord.TABLE.headers

    @pytest.mark.asyncio
    async def test_initialize_is_repeatable(self, tmp_path):
        path = tmp_path / "clinic.xlsx"
        repo = ClinicRepository(WorkbookStore(str(path)))
        await repo.initialize()
        await repo.add_appointment(make_appointment())
        await repo.initialize()

        assert len(await repo.list_appointments()) == 1

    @pytest.mark.asyncio
    async def test_round_trip_through_disk(self, tmp_path):
        path = tmp_path / "clinic.xlsx"
        repo = ClinicRepository(WorkbookStore(str(path)))
        await repo.initialize()
        await repo.add_appointment(make_appointment(external_event_id="evt-9"))
        await repo.update_appointment("evt-9", reminder_sent=True, status=AppointmentStatus.RESCHEDULED)

        reopened = ClinicRepository(WorkbookStore(str(path)))
        appointment = await reopened.find_appointment("evt-9")

        assert appointment.reminder_sent is True
        assert appointment.status is AppointmentStatus.RESCHEDULED
        assert appointment.created_at == NOW

    @pytest.mark.asyncio
    async def test_missing_column_is_added(self, tmp_path):
        path = tmp_path / "clinic.xlsx"
        await WorkbookStore(str(path)).ensure_schema([AppointmentRecord.TABLE])

        wb = load_workbook(path)
        ws = wb["Appointments"]
        ws.delete_cols(len(AppointmentRecord.TABLE.headers))
        wb.save(path)

        await WorkbookStore(str(path)).ensure_schema([AppointmentRecord.TABLE])

        headers = [c.value for c in load_workbook(path)["Appointments"][1]]
        assert "Follow Up Sent" in headers

    @pytest.mark.asyncio
    async def test_uninitialised_workbook_is_unavailable(self, tmp_path):
        store = WorkbookStore(str(tmp_path / "missing.xlsx"))
        with pytest.raises(StoreUnavailable):
            await store.scan("Appointments")

    @pytest.mark.asyncio
    async def test_incomplete_archive_is_unavailable(self, tmp_path):
        path = tmp_path / "clinic.xlsx"
        with zipfile.ZipFile(path, "w") as archive:
            archive.writestr("notes.txt", "not a workbook")

        with pytest.raises(StoreUnavailable):
            await WorkbookStore(str(path)).scan("Appointments")

    @pytest.mark.asyncio
    async def test_bug_in_helper_is_not_reported_as_unavailable(self, tmp_path, monkeypatch):
        store = WorkbookStore(str(tmp_path / "clinic.xlsx"))
        await store.ensure_schema([AppointmentRecord.TABLE])

        def broken(table):
            raise KeyError("external_event_id")

        monkeypatch.setattr(store, "_scan_sync", broken)

        with pytest.raises(KeyError):
            await store.scan("Appointments")


class TestRepository:
    """Typed records in and out of the store."""

    @pytest.mark.asyncio
    async def test_intake_round_trip(self, repo):
        await repo.add_intake(make_intake())

        intake = await repo.find_intake("F1")

        assert intake.patient_name == "Jane Doe"
        assert intake.status is IntakeStatus.NEW
        assert intake.has_appointment

    @pytest.mark.asyncio
    async def test_set_intake_status(self, repo):
        await repo.add_intake(make_intake())
        await repo.set_intake_status("F1", IntakeStatus.PROCESSED)

        assert (await repo.find_intake("F1")).status is IntakeStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_triage_keywords_round_trip_as_list(self, repo):
        await repo.add_triage(TriageRecord(
            form_id="F1",
            urgency=Urgency.HIGH,
            processed_by=ClassificationPath.HEURISTIC,
            risk_keywords=["chest pain", "shortness of breath"],
            created_at=NOW,
        ))

        triage = await repo.find_triage("F1")

        assert triage.risk_keywords == ["chest pain", "shortness of breath"]
        assert triage.is_degraded

    @pytest.mark.asyncio
    async def test_update_unknown_appointment_raises(self, repo):
        with pytest.raises(NotFoundError):
            await repo.update_appointment("nope", reminder_sent=True)

    @pytest.mark.asyncio
    async def test_analytics_numbers_survive(self, repo):
        await repo.record_event(AnalyticsEvent(
            event_type=AnalyticsEventType.WEEKLY_REPORT_GENERATED,
            total_bookings=12,
            no_show_rate=8.3,
            timestamp=NOW,
        ))

        event = (await repo.list_events())[0]

        assert event.total_bookings == 12
        assert event.no_show_rate == 8.3

    @pytest.mark.asyncio
    async def test_malformed_row_is_fatal(self, repo, store):
        await store.append("Appointments", {"External Event ID": "bad", "Timestamp": "not a date", "Status": "scheduled"})

        with pytest.raises(FatalError):
            await repo.find_appointment("bad")

    @pytest.mark.asyncio
    async def test_unknown_status_is_fatal(self, repo, store):
        await store.append("Appointments", {
            "External Event ID": "odd",
            "Timestamp": NOW.isoformat(),
            "Status": "teleported",
        })

        with pytest.raises(FatalError):
            await repo.list_appointments()
