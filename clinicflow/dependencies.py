"""Service container and FastAPI dependency providers."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import aiohttp
from fastapi import Request

from clinicflow.automations.reminders import ReminderEngine
from clinicflow.automations.reports import ReportEngine
from clinicflow.automations.scheduler import Scheduler, create_scheduler
from clinicflow.config import Settings
from clinicflow.pipelines.booking import BookingPipeline
from clinicflow.pipelines.intake import IntakePipeline
from clinicflow.repository import ClinicRepository
from clinicflow.services.calendar import GoogleCalendarClient
from clinicflow.services.calendly import CalendlyClient
from clinicflow.services.llm import CompletionClient, create_completion_client
from clinicflow.services.notifier import Notifier
from clinicflow.services.prompts import PromptRenderer
from clinicflow.services.transports import Transport, create_transport
from clinicflow.services.triage import TriageClassifier
from clinicflow.store import TabularStore, create_store

Clock = Callable[[], datetime]


@dataclass
class Services:
    settings: Settings
    store: TabularStore
    repo: ClinicRepository
    transport: Transport
    notifier: Notifier
    llm: Optional[CompletionClient]
    classifier: TriageClassifier
    calendar: GoogleCalendarClient
    calendly: CalendlyClient
    intake: IntakePipeline
    booking: BookingPipeline
    reminders: ReminderEngine
    reports: ReportEngine
    scheduler: Scheduler
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def build_services(
    settings: Settings,
    session: Optional[aiohttp.ClientSession],
    store: Optional[TabularStore] = None,
    transport: Optional[Transport] = None,
    llm: Optional[CompletionClient] = None,
    clock: Optional[Clock] = None,
) -> Services:
    """Wire every component from one Settings record. Overrides are used by tests."""
    store = store or create_store(settings)
    repo = ClinicRepository(store)
    transport = transport or create_transport(settings.smtp, sender_name=settings.clinic.name)
    notifier = Notifier(transport, settings.clinic)
    if llm is None:
        llm = create_completion_client(settings.model, session)
    prompts = PromptRenderer(settings.clinic.name)
    classifier = TriageClassifier(llm, prompts, clock=clock)
    calendar = GoogleCalendarClient(session, settings.calendar_id, settings.calendar_token, settings.timezone)
    calendly = CalendlyClient(session, settings.calendly_api_token, settings.calendly_webhook_secret)

    intake = IntakePipeline(repo, classifier, notifier, calendar, settings, clock=clock)
    booking = BookingPipeline(repo, notifier, calendar, calendly, settings, clock=clock)
    reminders = ReminderEngine(repo, notifier, settings, clock=clock)
    reports = ReportEngine(repo, notifier, llm, prompts, settings, clock=clock)
    scheduler = create_scheduler(settings, reminders, reports, notifier)

    return Services(
        settings=settings,
        store=store,
        repo=repo,
        transport=transport,
        notifier=notifier,
        llm=llm,
        classifier=classifier,
        calendar=calendar,
        calendly=calendly,
        intake=intake,
        booking=booking,
        reminders=reminders,
        reports=reports,
        scheduler=scheduler,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_intake_pipeline(request: Request) -> IntakePipeline:
    return get_services(request).intake


def get_booking_pipeline(request: Request) -> BookingPipeline:
    return get_services(request).booking


def get_scheduler(request: Request) -> Scheduler:
    return get_services(request).scheduler
