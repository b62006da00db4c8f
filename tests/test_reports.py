"""
Tests for ReportEngine - statistics, trends, recommendations and the narrative fallbacks.
"""

import json
import math
from datetime import timedelta

import pytest

from clinicflow.automations.reports import (
    DECREASING_TREND,
    HIGH_NO_SHOW_TREND,
    INCREASING_TREND,
    LOW_REMINDER_TREND,
    ReportEngine,
)
from clinicflow.constants import (
    AnalyticsEventType,
    AppointmentStatus,
    ClassificationPath,
    IntakeStatus,
    MessageKind,
    Urgency,
)
from clinicflow.exceptions import TransportError, ValidationError
from clinicflow.models import AnalyticsEvent, IntakeRecord, TriageRecord
from clinicflow.services.notifier import Notifier

from conftest import CLINIC, NOW, FailingTransport, ScriptedModel, make_appointment

NARRATIVE = json.dumps({
    "executiveSummary": "Busy week with steady completions.",
    "trends": "Bookings are up.",
    "recommendations": ["Open Saturday clinic"],
    "alerts": [],
    "nextWeekFocus": "Staffing",
})


def engine_for(repo, notifier, prompts, settings, clock, responses=None):
    llm = ScriptedModel(responses) if responses is not None else None
    return ReportEngine(repo, notifier, llm, prompts, settings, clock=clock)


@pytest.fixture
def engine(repo, notifier, prompts, settings, clock):
    return engine_for(repo, notifier, prompts, settings, clock)


def no_nan(value) -> bool:
    if isinstance(value, float):
        return not math.isnan(value)
    if isinstance(value, dict):
        return all(no_nan(v) for v in value.values())
    if isinstance(value, list):
        return all(no_nan(v) for v in value)
    return True


class TestWindows:
    def test_weekly_window_is_last_seven_days(self, engine):
        window = engine.weekly_window()

        assert window.label == ("2024-03-07", "2024-03-13")
        assert len(window.days) == 7

    def test_custom_window_inclusive(self, engine):
        window = engine.custom_window("2024-03-01", "2024-03-01")
        assert len(window.days) == 1

    @pytest.mark.parametrize("start,end", [("2024-03-10", "2024-03-01"), ("03/01/2024", "2024-03-05")])
    def test_custom_window_rejects_bad_ranges(self, engine, start, end):
        with pytest.raises(ValidationError):
            engine.custom_window(start, end)


class TestStatistics:
    def test_empty_window_has_zero_rates(self, engine):
        stats = engine.calculate_statistics([], [], [])

        assert stats["noShowRate"] == 0.0
        assert stats["completionRate"] == 0.0
        assert stats["highRiskPercentage"] == 0.0
        assert stats["averageDailyBookings"] == 0.0
        assert no_nan(stats)

    def test_rates(self, engine):
        appointments = [
            make_appointment(external_event_id="a", status=AppointmentStatus.COMPLETED),
            make_appointment(external_event_id="b", status=AppointmentStatus.COMPLETED),
            make_appointment(external_event_id="c", status=AppointmentStatus.NO_SHOW),
            make_appointment(external_event_id="d", status=AppointmentStatus.CANCELLED),
        ]
        triage = [
            TriageRecord(form_id="F1", urgency=Urgency.HIGH, processed_by=ClassificationPath.MODEL, created_at=NOW),
            TriageRecord(form_id="F2", urgency=Urgency.LOW, processed_by=ClassificationPath.MODEL, created_at=NOW),
        ]
        events = [AnalyticsEvent(event_type=AnalyticsEventType.REMINDER_SENT, timestamp=NOW)]

        stats = engine.calculate_statistics(appointments, triage, events)

        assert stats["completionRate"] == 50.0
        assert stats["noShowRate"] == 25.0
        assert stats["cancellationRate"] == 25.0
        assert stats["highRiskPercentage"] == 50.0
        assert stats["remindersSent"] == 1
        assert stats["averageDailyBookings"] == round(4 / 7, 1)


class TestTrendsAndRecommendations:
    def test_increasing_bookings(self, engine):
        window = engine.weekly_window()
        appointments = [
            make_appointment(external_event_id=f"e{i}", created_at=NOW - timedelta(hours=i))
            for i in range(4)
        ]
        stats = engine.calculate_statistics(appointments, [], [])

        trends = engine.identify_trends(appointments, stats, window)

        assert INCREASING_TREND in trends
        assert LOW_REMINDER_TREND in trends

    def test_decreasing_bookings(self, engine):
        window = engine.weekly_window()
        appointments = [
            make_appointment(external_event_id=f"e{i}", created_at=NOW - timedelta(days=6))
            for i in range(3)
        ]
        stats = engine.calculate_statistics(appointments, [], [])

        assert DECREASING_TREND in engine.identify_trends(appointments, stats, window)

    def test_no_data_no_trends(self, engine):
        window = engine.weekly_window()
        stats = engine.calculate_statistics([], [], [])

        assert engine.identify_trends([], stats, window) == []

    def test_high_no_show_recommendations(self, engine):
        stats = engine.calculate_statistics(
            [make_appointment(status=AppointmentStatus.NO_SHOW), make_appointment(external_event_id="x")], [], []
        )

        recommendations = engine.generate_recommendations(stats, [HIGH_NO_SHOW_TREND])

        assert any("reminder calls" in r for r in recommendations)

    def test_excellent_completion(self, engine):
        stats = engine.calculate_statistics([make_appointment(status=AppointmentStatus.COMPLETED)], [], [])

        assert "Excellent completion rate - maintain current processes" in engine.generate_recommendations(stats, [])


class TestNarrative:
    @pytest.mark.asyncio
    async def test_model_narrative_keeps_computed_metrics(self, repo, notifier, prompts, settings, clock):
        engine = engine_for(repo, notifier, prompts, settings, clock, [NARRATIVE])
        window = engine.weekly_window()
        stats = engine.calculate_statistics([], [], [])

        narrative, path = await engine.narrative(stats, [], [], window)

        assert path is ClassificationPath.MODEL
        assert narrative["executiveSummary"] == "Busy week with steady completions."
        assert narrative["keyMetrics"]["noShowRate"] == "0.0%"

    @pytest.mark.asyncio
    async def test_truncated_narrative_is_salvaged(self, repo, notifier, prompts, settings, clock):
        engine = engine_for(repo, notifier, prompts, settings, clock, ['{"executiveSummary": "Short week", "trends'])
        window = engine.weekly_window()
        stats = engine.calculate_statistics([], [], [])

        narrative, path = await engine.narrative(stats, [], [], window)

        assert path is ClassificationPath.PARTIAL
        assert narrative["executiveSummary"] == "Short week"
        assert narrative["nextWeekFocus"] == "Maintain current operations"

    @pytest.mark.asyncio
    async def test_no_model_uses_fallback(self, engine):
        window = engine.weekly_window()
        stats = engine.calculate_statistics([], [], [])

        narrative, path = await engine.narrative(stats, [], [], window)

        assert path is ClassificationPath.HEURISTIC
        assert narrative["recommendations"] == ["Continue monitoring clinic operations"]
        assert "0 bookings between 2024-03-07 and 2024-03-13" in narrative["executiveSummary"]


class TestWeeklyReport:
    @pytest.mark.asyncio
    async def test_empty_window_report_is_dispatched(self, engine, repo, outbox):
        report = await engine.generate_weekly()

        assert report["dispatched"] is True
        assert report["stats"]["noShowRate"] == 0
        assert report["stats"]["completionRate"] == 0
        assert no_nan(report)
        sent = outbox.of_kind(MessageKind.WEEKLY_REPORT)
        assert len(sent) == 1
        assert sent[0].to == CLINIC.staff_email
        assert "NaN" not in sent[0].text
        events = await repo.list_events(lambda e: e.event_type is AnalyticsEventType.WEEKLY_REPORT_GENERATED)
        assert events[0].total_bookings == 0

    @pytest.mark.asyncio
    async def test_only_rows_inside_window_count(self, engine, repo):
        await repo.add_appointment(make_appointment(external_event_id="in", status=AppointmentStatus.COMPLETED))
        await repo.add_appointment(make_appointment(external_event_id="old", created_at=NOW - timedelta(days=10)))

        report = await engine.generate_weekly()

        assert report["stats"]["totalBookings"] == 1
        assert report["stats"]["completionRate"] == 100.0

    @pytest.mark.asyncio
    async def test_dispatch_failure_alerts_and_raises(self, repo, prompts, settings, clock):
        transport = FailingTransport(failures=1, kinds=[MessageKind.WEEKLY_REPORT])
        engine = ReportEngine(repo, Notifier(transport, CLINIC), None, prompts, settings, clock=clock)

        with pytest.raises(TransportError):
            await engine.generate_weekly()

        alerts = transport.of_kind(MessageKind.ERROR_ALERT)
        assert len(alerts) == 1
        assert alerts[0].subject == "System Error Alert - weekly_report_error"
        assert await repo.list_events() == []

    @pytest.mark.asyncio
    async def test_custom_report_is_not_sent(self, engine, outbox):
        report = await engine.generate_custom("2024-03-01", "2024-03-13")

        assert report["dispatched"] is False
        assert report["periodStart"] == "2024-03-01"
        assert len(outbox.sent) == 0


class TestDashboard:
    @pytest.mark.asyncio
    async def test_totals(self, engine, repo, clock):
        await repo.add_appointment(make_appointment(external_event_id="a"))
        await repo.add_appointment(make_appointment(external_event_id="b", status=AppointmentStatus.COMPLETED))
        await repo.add_appointment(make_appointment(
            external_event_id="c", status=AppointmentStatus.NO_SHOW, created_at=NOW - timedelta(days=30)
        ))
        await repo.add_triage(TriageRecord(
            form_id="F1", urgency=Urgency.HIGH, processed_by=ClassificationPath.HEURISTIC, created_at=NOW
        ))
        await repo.add_intake(IntakeRecord(
            form_id="F1", patient_name="Jane Doe", dob="1990-01-01", email="j@x.com",
            status=IntakeStatus.PROCESSED, created_at=NOW,
        ))

        stats = await engine.dashboard_stats()

        assert stats["totalBookings"] == 3
        assert stats["upcomingAppointments"] == 1
        assert stats["recentBookings"] == 2
        assert stats["triage"] == {"high": 1, "moderate": 0, "low": 0, "degraded": 1}
        assert stats["intakes"] == {"total": 1, "processed": 1, "failed": 0}
        assert stats["lastUpdated"] == clock().isoformat()
