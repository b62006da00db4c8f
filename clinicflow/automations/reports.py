"""
Operational reports: statistics, trends and recommendations over a date
window, plus a model-written narrative with a deterministic fallback.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from clinicflow.config import Settings
from clinicflow.constants import AnalyticsEventType, AppointmentStatus, ClassificationPath, IntakeStatus, Urgency
from clinicflow.exceptions import ModelError, ValidationError
from clinicflow.models import AnalyticsEvent, AppointmentRecord, TriageRecord
from clinicflow.repository import ClinicRepository
from clinicflow.services.llm import CompletionClient
from clinicflow.services.notifier import Notifier
from clinicflow.services.prompts import PromptRenderer
from clinicflow.services.structured_output import coerce_list, coerce_text, extract_json_object, salvage_fields
from clinicflow.services.templates import ReportPayload

WEEK_DAYS = 7
NARRATIVE_STRING_FIELDS = ("executiveSummary", "trends", "nextWeekFocus")
NARRATIVE_LIST_FIELDS = ("recommendations", "alerts")

INCREASING_TREND = "Increasing booking trend detected"
DECREASING_TREND = "Decreasing booking trend detected"
HIGH_NO_SHOW_TREND = "High no-show rate detected (>15%)"
LOW_NO_SHOW_TREND = "Low no-show rate detected (<5%)"
HIGH_RISK_TREND = "High percentage of urgent cases detected (>20%)"
LOW_REMINDER_TREND = "Low reminder send rate detected"


def _rate(part: int, whole: int) -> float:
    """Percentage with one decimal; 0.0 when there is nothing to divide by."""
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 1)


def _mean(values: List[int]) -> float:
    return sum(values) / len(values) if values else 0.0


# (condition on stats and trends, recommendations it adds)
RECOMMENDATION_RULES: List[Tuple[Callable[[Dict[str, Any], List[str]], bool], Tuple[str, ...]]] = [
    (lambda s, t: s["noShowRate"] > 15, (
        "Consider implementing reminder calls in addition to emails to reduce no-show rate",
        "Review scheduling process to ensure patients understand appointment importance",
    )),
    (lambda s, t: s["highRiskPercentage"] > 20, (
        "Consider implementing same-day urgent care slots for high-risk patients",
        "Review triage criteria to ensure appropriate urgency classification",
    )),
    (lambda s, t: INCREASING_TREND in t, (
        "Consider expanding appointment availability to meet growing demand",
    )),
    (lambda s, t: DECREASING_TREND in t and INCREASING_TREND not in t, (
        "Review marketing and patient outreach strategies to maintain booking levels",
    )),
    (lambda s, t: LOW_REMINDER_TREND in t, (
        "Review reminder system to ensure all patients receive timely notifications",
    )),
    (lambda s, t: s["completionRate"] > 90, (
        "Excellent completion rate - maintain current processes",
    )),
    (lambda s, t: s["averageDailyBookings"] > 20, (
        "High daily booking volume - consider staff scheduling optimization",
    )),
]


@dataclass
class ReportWindow:
    start: datetime
    end: datetime

    @property
    def days(self) -> List[date]:
        first, last = self.start.date(), self.end.date()
        return [first + timedelta(days=i) for i in range((last - first).days + 1)]

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    @property
    def label(self) -> Tuple[str, str]:
        return self.start.date().isoformat(), self.end.date().isoformat()


class ReportEngine:
    def __init__(
        self,
        repo: ClinicRepository,
        notifier: Notifier,
        llm: Optional[CompletionClient],
        prompts: PromptRenderer,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repo = repo
        self.notifier = notifier
        self.llm = llm
        self.prompts = prompts
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # Windows

    def _day_window(self, first: date, last: date) -> ReportWindow:
        tz = self.settings.tz
        return ReportWindow(
            start=datetime.combine(first, time.min, tzinfo=tz),
            end=datetime.combine(last, time.max, tzinfo=tz),
        )

    def weekly_window(self) -> ReportWindow:
        """The last seven calendar days, today included, in clinic time."""
        today = self._clock().astimezone(self.settings.tz).date()
        return self._day_window(today - timedelta(days=WEEK_DAYS - 1), today)

    def custom_window(self, start_date: str, end_date: str) -> ReportWindow:
        try:
            first, last = date.fromisoformat(start_date), date.fromisoformat(end_date)
        except ValueError:
            raise ValidationError(
                "Dates must be YYYY-MM-DD",
                details=[{"field": "startDate/endDate", "message": f"got {start_date!r} and {end_date!r}"}],
            )
        if first > last:
            raise ValidationError("startDate must not be after endDate")
        return self._day_window(first, last)

    # Computation

    def calculate_statistics(
        self,
        appointments: List[AppointmentRecord],
        triage: List[TriageRecord],
        events: List[AnalyticsEvent],
        days: int = WEEK_DAYS,
    ) -> Dict[str, Any]:
        total = len(appointments)
        completed = sum(1 for a in appointments if a.status is AppointmentStatus.COMPLETED)
        no_shows = sum(1 for a in appointments if a.status is AppointmentStatus.NO_SHOW)
        cancelled = sum(1 for a in appointments if a.status is AppointmentStatus.CANCELLED)
        high = sum(1 for t in triage if t.urgency is Urgency.HIGH)
        moderate = sum(1 for t in triage if t.urgency is Urgency.MODERATE)
        low = sum(1 for t in triage if t.urgency is Urgency.LOW)

        return {
            "totalBookings": total,
            "completedAppointments": completed,
            "noShows": no_shows,
            "cancelledAppointments": cancelled,
            "highRiskTriage": high,
            "moderateRiskTriage": moderate,
            "lowRiskTriage": low,
            "totalTriage": len(triage),
            "remindersSent": sum(1 for e in events if e.event_type is AnalyticsEventType.REMINDER_SENT),
            "followUpsSent": sum(1 for e in events if e.event_type is AnalyticsEventType.FOLLOW_UP_SENT),
            "noShowRate": _rate(no_shows, total),
            "completionRate": _rate(completed, total),
            "cancellationRate": _rate(cancelled, total),
            "averageDailyBookings": round(total / days, 1) if days > 0 else 0.0,
            "highRiskPercentage": _rate(high, len(triage)),
        }

    def identify_trends(
        self,
        appointments: List[AppointmentRecord],
        stats: Dict[str, Any],
        window: ReportWindow,
    ) -> List[str]:
        trends: List[str] = []

        tz = self.settings.tz
        per_day = {day: 0 for day in window.days}
        for appointment in appointments:
            day = appointment.created_at.astimezone(tz).date()
            if day in per_day:
                per_day[day] += 1
        daily = [per_day[day] for day in window.days]

        half = len(daily) // 2
        first_avg, second_avg = _mean(daily[:half]), _mean(daily[half:])
        if half and (first_avg or second_avg):
            if second_avg > first_avg * 1.1:
                trends.append(INCREASING_TREND)
            elif second_avg < first_avg * 0.9:
                trends.append(DECREASING_TREND)

        if stats["totalBookings"] > 0:
            if stats["noShowRate"] > 15:
                trends.append(HIGH_NO_SHOW_TREND)
            elif stats["noShowRate"] < 5:
                trends.append(LOW_NO_SHOW_TREND)
            if stats["remindersSent"] / stats["totalBookings"] < 0.8:
                trends.append(LOW_REMINDER_TREND)

        if stats["totalTriage"] > 0 and stats["highRiskPercentage"] > 20:
            trends.append(HIGH_RISK_TREND)

        return trends

    def generate_recommendations(self, stats: Dict[str, Any], trends: List[str]) -> List[str]:
        recommendations: List[str] = []
        for condition, advice in RECOMMENDATION_RULES:
            if condition(stats, trends):
                recommendations.extend(advice)
        return recommendations

    # Narrative

    def fallback_narrative(
        self, stats: Dict[str, Any], trends: List[str], recommendations: List[str], window: ReportWindow
    ) -> Dict[str, Any]:
        start, end = window.label
        alerts = []
        if stats["noShowRate"] > 15:
            alerts.append(f"No-show rate is {stats['noShowRate']}%")
        if stats["highRiskPercentage"] > 20:
            alerts.append(f"{stats['highRiskPercentage']}% of triaged patients were high risk")
        return {
            "executiveSummary": (
                f"{stats['totalBookings']} bookings between {start} and {end}: "
                f"{stats['completedAppointments']} completed, {stats['noShows']} no-shows and "
                f"{stats['cancelledAppointments']} cancelled. {stats['highRiskTriage']} of "
                f"{stats['totalTriage']} triaged patients were high risk."
            ),
            "trends": "; ".join(trends) if trends else "No significant trends detected.",
            "recommendations": recommendations or ["Continue monitoring clinic operations"],
            "alerts": alerts,
            "nextWeekFocus": recommendations[0] if recommendations else "Maintain current operations",
        }

    @staticmethod
    def key_metrics(stats: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "totalVisits": stats["totalBookings"],
            "noShowRate": f"{stats['noShowRate']}%",
            "highRiskCases": stats["highRiskTriage"],
            "completionRate": f"{stats['completionRate']}%",
        }

    async def narrative(
        self, stats: Dict[str, Any], trends: List[str], recommendations: List[str], window: ReportWindow
    ) -> Tuple[Dict[str, Any], ClassificationPath]:
        fallback = self.fallback_narrative(stats, trends, recommendations, window)
        narrative, path = dict(fallback), ClassificationPath.HEURISTIC

        response = None
        if self.llm is not None:
            start, end = window.label
            try:
                response = await self.llm.complete(self.prompts.weekly_report_prompt(stats, trends, start, end))
            except ModelError as e:
                logger.warning(f"Report narrative model unavailable, using fallback: {e}")

        if response:
            data = extract_json_object(response)
            if data is not None:
                path = ClassificationPath.MODEL
            else:
                data = salvage_fields(response, NARRATIVE_STRING_FIELDS, NARRATIVE_LIST_FIELDS)
                path = ClassificationPath.PARTIAL if data else ClassificationPath.HEURISTIC
            for name in NARRATIVE_STRING_FIELDS:
                if coerce_text(data.get(name)):
                    narrative[name] = coerce_text(data.get(name))
            for name in NARRATIVE_LIST_FIELDS:
                if name in data:
                    narrative[name] = coerce_list(data.get(name))

        # Numbers in the report always come from the computed statistics
        narrative["keyMetrics"] = self.key_metrics(stats)
        return narrative, path

    # Reports

    async def _build(self, window: ReportWindow, title: str) -> Dict[str, Any]:
        appointments = await self.repo.list_appointments(lambda a: window.contains(a.created_at))
        triage = await self.repo.list_triage(lambda t: window.contains(t.created_at))
        events = await self.repo.list_events(lambda e: window.contains(e.timestamp))

        stats = self.calculate_statistics(appointments, triage, events, days=len(window.days))
        trends = self.identify_trends(appointments, stats, window)
        recommendations = self.generate_recommendations(stats, trends)
        narrative, source = await self.narrative(stats, trends, recommendations, window)
        start, end = window.label

        logger.info(f"{title} computed for {start}..{end}: {stats['totalBookings']} bookings")
        return {
            "title": title,
            "periodStart": start,
            "periodEnd": end,
            "stats": stats,
            "trends": trends,
            "recommendations": recommendations,
            "narrative": narrative,
            "narrativeSource": source.value,
        }

    async def generate_weekly(self) -> Dict[str, Any]:
        """Compute the weekly report, send it to staff and log the event."""
        report = await self._build(self.weekly_window(), "Weekly Clinic Report")

        try:
            report["messageId"] = await self.notifier.send_weekly_report(ReportPayload(
                stats=report["stats"],
                narrative=report["narrative"],
                trends=report["trends"],
                recommendations=report["recommendations"],
                period_start=report["periodStart"],
                period_end=report["periodEnd"],
                title=report["title"],
            ))
        except Exception as e:
            logger.error(f"Weekly report dispatch failed: {e}")
            try:
                await self.notifier.send_error_alert(
                    error_type="weekly_report_error",
                    message=f"Weekly report for {report['periodStart']}..{report['periodEnd']} not sent: {e}",
                )
            except Exception as alert_error:
                logger.error(f"Failed to send error notification: {alert_error}")
            raise
        report["dispatched"] = True

        stats = report["stats"]
        try:
            await self.repo.record_event(AnalyticsEvent(
                event_type=AnalyticsEventType.WEEKLY_REPORT_GENERATED,
                total_bookings=stats["totalBookings"],
                high_risk_triage=stats["highRiskTriage"],
                no_show_rate=stats["noShowRate"],
                details=f"{report['periodStart']}..{report['periodEnd']}",
                timestamp=self._clock(),
            ))
        except Exception as e:
            logger.warning(f"Analytics event weekly_report_generated not recorded: {e}")

        return report

    async def generate_custom(self, start_date: str, end_date: str) -> Dict[str, Any]:
        """Same report over an inclusive date range; returned, not sent."""
        report = await self._build(self.custom_window(start_date, end_date), "Custom Clinic Report")
        report["dispatched"] = False
        return report

    async def dashboard_stats(self) -> Dict[str, Any]:
        """All-time totals plus bookings created in the last seven days."""
        appointments = await self.repo.list_appointments()
        triage = await self.repo.list_triage()
        intakes = await self.repo.list_intakes()
        events = await self.repo.list_events()

        stats = self.calculate_statistics(appointments, triage, events)
        week = self.weekly_window()
        return {
            "totalBookings": stats["totalBookings"],
            "completedAppointments": stats["completedAppointments"],
            "noShows": stats["noShows"],
            "cancelledAppointments": stats["cancelledAppointments"],
            "upcomingAppointments": sum(1 for a in appointments if a.status.is_upcoming),
            "recentBookings": sum(1 for a in appointments if week.contains(a.created_at)),
            "noShowRate": stats["noShowRate"],
            "completionRate": stats["completionRate"],
            "triage": {
                "high": stats["highRiskTriage"],
                "moderate": stats["moderateRiskTriage"],
                "low": stats["lowRiskTriage"],
                "degraded": sum(1 for t in triage if t.is_degraded),
            },
            "intakes": {
                "total": len(intakes),
                "processed": sum(1 for i in intakes if i.status is IntakeStatus.PROCESSED),
                "failed": sum(1 for i in intakes if i.status is IntakeStatus.FAILED),
            },
            "remindersSent": stats["remindersSent"],
            "followUpsSent": stats["followUpsSent"],
            "lastUpdated": self._clock().isoformat(),
        }
