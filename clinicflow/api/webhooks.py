"""Inbound webhooks: intake form submissions and booking provider events."""

import asyncio

import pydantic
from fastapi import APIRouter, Depends, Request
from loguru import logger

from clinicflow.api.limits import limiter, webhook_rate_limit
from clinicflow.dependencies import Services, get_services
from clinicflow.exceptions import UnauthorizedError, Unavailable, ValidationError
from clinicflow.schemas import (
    BookingResponse,
    BookingWebhook,
    IntakeBatchRequest,
    IntakeResponse,
    IntakeSubmission,
)

router = APIRouter()

SIGNATURE_HEADER = "Calendly-Webhook-Signature"


@router.post("/intake", response_model=IntakeResponse, response_model_by_alias=True)
@limiter.limit(webhook_rate_limit)
async def intake_webhook(
    request: Request,
    submission: IntakeSubmission,
    services: Services = Depends(get_services),
):
    timeout = services.settings.webhook_timeout_seconds
    try:
        async with asyncio.timeout(timeout):
            result = await services.intake.retry_failed(submission)
    except TimeoutError:
        logger.error(f"Intake {submission.form_id or '(no formId)'} did not finish within {timeout}s")
        raise Unavailable(f"Intake processing exceeded {timeout}s")
    return IntakeResponse(**result.to_response())


@router.post("/intake/batch")
@limiter.limit(webhook_rate_limit)
async def intake_batch_webhook(
    request: Request,
    batch: IntakeBatchRequest,
    services: Services = Depends(get_services),
):
    outcome = await services.intake.handle_batch(batch.submissions)
    return {
        "success": not outcome["errors"],
        "processed": len(outcome["results"]),
        "failed": len(outcome["errors"]),
        "results": [IntakeResponse(**r).model_dump(by_alias=True) for r in outcome["results"]],
        "errors": outcome["errors"],
    }


@router.post("/booking", response_model=BookingResponse, response_model_by_alias=True)
@limiter.limit(webhook_rate_limit)
async def booking_webhook(request: Request, services: Services = Depends(get_services)):
    body = await request.body()

    if not services.calendly.verify_signature(body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("Booking webhook rejected: bad signature")
        raise UnauthorizedError("Invalid webhook signature")

    try:
        webhook = BookingWebhook.model_validate_json(body)
    except pydantic.ValidationError as e:
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
            for err in e.errors()
        ]
        raise ValidationError("Booking payload validation failed", details=details)

    result = await services.booking.handle(webhook)
    return BookingResponse(**result.to_response())
