"""
Intake pipeline: one intake submission end to end.

    validate -> persist intake -> classify -> persist triage -> staff alert
             -> patient confirmation -> calendar entry -> analytics

Only validation and intake persistence can fail the pipeline. Every later
step reports a StepResult and the pipeline carries on. Replays are safe: the
intake row and the triage row are each guarded by a lookup on formId, and an
intake is only marked processed once its triage row exists.
"""

import asyncio
import re
import traceback
import uuid
from datetime import date, datetime, timezone
from typing import Awaitable, Callable, List, Optional

from loguru import logger

from clinicflow.config import Settings
from clinicflow.constants import AnalyticsEventType, DuplicateIntakePolicy, IntakeStatus
from clinicflow.exceptions import (
    ConflictError,
    FatalError,
    ModelError,
    StoreUnavailable,
    TransportError,
    Unavailable,
    ValidationError,
)
from clinicflow.models import AnalyticsEvent, IntakeRecord, TriageRecord, parse_local_datetime
from clinicflow.pipelines.results import IntakeResult, StepOutcome, StepResult, run_soft_step
from clinicflow.repository import ClinicRepository
from clinicflow.resilience import retry_with_backoff
from clinicflow.schemas import IntakeSubmission
from clinicflow.services.calendar import GoogleCalendarClient
from clinicflow.services.notifier import Notifier, details_from_intake
from clinicflow.services.templates import ConfirmationPayload, TriageAlertPayload
from clinicflow.services.triage import TriageAssessment, TriageClassifier

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
TIME_RE = re.compile(r"^([01]?\d|2[0-3]):[0-5]\d$")

RETRYABLE_ERRORS = (StoreUnavailable, TransportError, ModelError, Unavailable)


def parse_dob(value: str) -> Optional[date]:
    for parse in (date.fromisoformat, lambda v: datetime.strptime(v, "%m/%d/%Y").date()):
        try:
            return parse(value)
        except ValueError:
            continue
    return None


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


class IntakePipeline:
    def __init__(
        self,
        repo: ClinicRepository,
        classifier: TriageClassifier,
        notifier: Notifier,
        calendar: Optional[GoogleCalendarClient],
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.repo = repo
        self.classifier = classifier
        self.notifier = notifier
        self.calendar = calendar
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

    def validate(self, submission: IntakeSubmission) -> IntakeRecord:
        """Build the intake record or raise ValidationError listing every problem."""
        errors: List[dict] = []

        name = _clean(submission.patient_name)
        email = _clean(submission.email)
        dob = _clean(submission.dob)

        if not name:
            errors.append({"field": "patientName", "message": "Patient name is required"})
        if not email:
            errors.append({"field": "email", "message": "Email is required"})
        elif not EMAIL_RE.match(email):
            errors.append({"field": "email", "message": "Email address is not valid"})
        if not dob:
            errors.append({"field": "dob", "message": "Date of birth is required"})
        else:
            parsed = parse_dob(dob)
            if parsed is None:
                errors.append({"field": "dob", "message": "Date of birth is not a valid date"})
            elif parsed > self._clock().astimezone(self.settings.tz).date():
                errors.append({"field": "dob", "message": "Date of birth cannot be in the future"})

        appointment_date = _clean(submission.appointment_date)
        appointment_time = _clean(submission.appointment_time)
        if appointment_time and not TIME_RE.match(appointment_time):
            errors.append({"field": "appointmentTime", "message": "Appointment time must be HH:MM"})
        if appointment_date:
            try:
                date.fromisoformat(appointment_date)
            except ValueError:
                errors.append({"field": "appointmentDate", "message": "Appointment date must be YYYY-MM-DD"})

        if errors:
            raise ValidationError("Form data validation failed", details=errors)

        form_id = _clean(submission.form_id)
        if not form_id:
            form_id = uuid.uuid4().hex
            logger.info(f"Submission had no formId, generated {form_id}")

        if len(appointment_time) == 4:
            appointment_time = f"0{appointment_time}"

        return IntakeRecord(
            form_id=form_id,
            patient_name=name,
            dob=dob,
            email=email,
            phone=_clean(submission.phone),
            address=_clean(submission.address),
            reason_for_visit=_clean(submission.reason_for_visit),
            current_medications=_clean(submission.current_medications),
            allergies=_clean(submission.allergies),
            past_conditions=_clean(submission.past_conditions),
            insurance_provider=_clean(submission.insurance.provider),
            insurance_id=_clean(submission.insurance.id),
            emergency_contact=_clean(submission.emergency.contact),
            emergency_phone=_clean(submission.emergency.phone),
            appointment_date=appointment_date,
            appointment_time=appointment_time,
            visit_type=_clean(submission.visit_type),
            additional_notes=_clean(submission.additional_notes),
            status=IntakeStatus.NEW,
            created_at=self._clock(),
        )

    async def handle(self, submission: IntakeSubmission, notify_on_failure: bool = True) -> IntakeResult:
        intake = self.validate(submission)
        try:
            return await self._run(intake, replay=False)
        except (ValidationError, ConflictError):
            raise
        except Exception as e:
            if notify_on_failure:
                await self._notify_failure(intake, e, attempts=1)
            raise

    async def retry_failed(self, submission: IntakeSubmission, max_attempts: Optional[int] = None) -> IntakeResult:
        """
        Replay the whole pipeline with exponential backoff on transient errors.

        Attempts after the first treat an existing intake row as their own
        earlier partial write. One error alert is sent when attempts run out.
        """
        intake = self.validate(submission)
        attempts = max_attempts or self.settings.max_pipeline_retries
        last_attempt = 0

        async def attempt(n: int) -> IntakeResult:
            nonlocal last_attempt
            last_attempt = n
            return await self._run(intake, replay=n > 1)

        try:
            return await retry_with_backoff(
                attempt,
                max_attempts=attempts,
                base_delay=self.settings.retry_base_delay_seconds,
                retry_on=RETRYABLE_ERRORS,
                sleep=self._sleep,
                label=f"Intake {intake.form_id}",
            )
        except (ValidationError, ConflictError):
            raise
        except Exception as e:
            await self._mark_failed(intake.form_id)
            await self._notify_failure(intake, e, attempts=last_attempt)
            raise

    async def handle_batch(self, submissions: List[IntakeSubmission]) -> dict:
        """Process submissions one after another; one failure does not stop the batch."""
        results, errors = [], []
        for index, submission in enumerate(submissions):
            try:
                result = await self.handle(submission)
                results.append(result.to_response())
            except Exception as e:
                logger.warning(f"Batch item {index} failed: {e}")
                errors.append({
                    "index": index,
                    "formId": submission.form_id,
                    "error": getattr(e, "message", str(e)),
                })
        logger.info(f"Batch processed: {len(results)} succeeded, {len(errors)} failed")
        return {"results": results, "errors": errors}

    async def _run(self, intake: IntakeRecord, replay: bool) -> IntakeResult:
        log = logger.bind(form_id=intake.form_id)
        result = IntakeResult(form_id=intake.form_id)

        existing = await self.repo.find_intake(intake.form_id)
        if existing is not None:
            if existing.status is IntakeStatus.PROCESSED:
                if self.settings.duplicate_intake_policy is DuplicateIntakePolicy.REJECT and not replay:
                    raise ConflictError(f"Intake {intake.form_id} was already submitted")
                log.info("Duplicate submission of an already processed intake, nothing to do")
                return await self._duplicate_result(existing, result)
            if self.settings.duplicate_intake_policy is DuplicateIntakePolicy.REJECT and not replay:
                raise ConflictError(f"Intake {intake.form_id} was already submitted")
            log.info(f"Resuming intake previously left as '{existing.status.value}'")
            intake = existing
        else:
            await self.repo.add_intake(intake)
            log.info("Intake persisted")

        assessment = await self._triage(intake, result, log)
        result.urgency = assessment.urgency
        result.processed_by = assessment.path
        result.degradation = assessment.degradation

        result.add(await run_soft_step("staff_alert", lambda: self._send_staff_alert(intake, assessment), log))
        result.add(await run_soft_step(
            "patient_confirmation",
            lambda: self.notifier.send_confirmation(
                ConfirmationPayload(details_from_intake(intake), urgency=assessment.urgency)
            ),
            log,
        ))
        result.add(await self._calendar_step(intake, log))
        result.add(await run_soft_step("analytics", lambda: self._record_processed(intake, assessment), log))

        stored = result.step("persist_triage")
        if stored is not None and stored.outcome is StepOutcome.FAILED:
            log.warning("Triage record not stored, leaving intake open so a resubmission completes it")
        else:
            await self._mark_processed(intake, result, log)
        log.info(f"Intake processed (urgency={assessment.urgency.value}, soft_errors={len(result.soft_errors)})")
        return result

    async def _triage(self, intake: IntakeRecord, result: IntakeResult, log) -> TriageAssessment:
        stored: Optional[TriageRecord] = None
        try:
            stored = await self.repo.find_triage(intake.form_id)
        except StoreUnavailable as e:
            log.warning(f"Could not check for an existing triage record: {e}")

        if stored is not None:
            log.info("Reusing stored triage record")
            result.add(StepResult.skipped("persist_triage", "already stored"))
            return TriageAssessment.from_record(stored)

        assessment = await self.classifier.classify(intake)
        record = assessment.to_record(intake, created_at=self._clock())
        result.add(await run_soft_step("persist_triage", lambda: self.repo.add_triage(record), log))
        return assessment

    async def _send_staff_alert(self, intake: IntakeRecord, assessment: TriageAssessment) -> str:
        return await self.notifier.send_triage_alert(TriageAlertPayload(
            form_id=intake.form_id,
            patient_name=intake.patient_name,
            urgency=assessment.urgency,
            summary=assessment.summary,
            risk_keywords=assessment.risk_keywords,
            recommendations=assessment.recommendations,
            follow_up_notes=assessment.follow_up_notes,
            reason_for_visit=intake.reason_for_visit,
            appointment_date=intake.appointment_date,
            degraded=assessment.is_degraded,
        ))

    async def _calendar_step(self, intake: IntakeRecord, log) -> StepResult:
        if not intake.has_appointment:
            return StepResult.skipped("calendar", "no appointment date and time")
        if self.calendar is None or not self.calendar.is_enabled():
            return StepResult.skipped("calendar", "calendar not configured")
        if parse_local_datetime(intake.appointment_date, intake.appointment_time, self.settings.tz) is None:
            return StepResult.skipped("calendar", "appointment date/time not parseable")

        async def create() -> str:
            event = self.calendar.build_event(
                patient_name=intake.patient_name,
                email=intake.email,
                phone=intake.phone,
                date=intake.appointment_date,
                time=intake.appointment_time,
                visit_type=intake.visit_type or "Consultation",
                reason=intake.reason_for_visit,
            )
            return await self.calendar.create_event(event)

        return await run_soft_step("calendar", create, log)

    async def _record_processed(self, intake: IntakeRecord, assessment: TriageAssessment) -> int:
        return await self.repo.record_event(AnalyticsEvent(
            event_type=AnalyticsEventType.INTAKE_FORM_PROCESSED,
            patient_name=intake.patient_name,
            urgency=assessment.urgency.value,
            appointment_date=intake.appointment_date,
            appointment_time=intake.appointment_time,
            visit_type=intake.visit_type,
            has_appointment=intake.has_appointment,
            external_id=intake.form_id,
            details=assessment.path.value,
            timestamp=self._clock(),
        ))

    async def _mark_processed(self, intake: IntakeRecord, result: IntakeResult, log) -> None:
        if not intake.status.can_transition(IntakeStatus.PROCESSED):
            return
        result.add(await run_soft_step(
            "mark_processed",
            lambda: self.repo.set_intake_status(intake.form_id, IntakeStatus.PROCESSED),
            log,
        ))

    async def _duplicate_result(self, existing: IntakeRecord, result: IntakeResult) -> IntakeResult:
        result.duplicate = True
        triage = await self.repo.find_triage(existing.form_id)
        if triage is not None:
            result.urgency = triage.urgency
            result.processed_by = triage.processed_by
        return result

    async def _mark_failed(self, form_id: str) -> None:
        try:
            intake = await self.repo.find_intake(form_id)
            if intake is not None and intake.status.can_transition(IntakeStatus.FAILED):
                await self.repo.set_intake_status(form_id, IntakeStatus.FAILED)
        except Exception as e:
            logger.bind(form_id=form_id).warning(f"Could not mark intake as failed: {e}")

    async def _notify_failure(self, intake: IntakeRecord, error: Exception, attempts: int) -> None:
        error_type = "fatal_error" if isinstance(error, FatalError) else "intake_form_processing_error"
        try:
            await self.notifier.send_error_alert(
                error_type=error_type,
                message=f"Failed to process intake form {intake.form_id}: {error}",
                stack="".join(traceback.format_exception(type(error), error, error.__traceback__)),
                context={"Form ID": intake.form_id, "Attempts": attempts},
            )
        except Exception as e:
            logger.bind(form_id=intake.form_id).error(f"Failed to send error notification: {e}")
