"""Error taxonomy and FastAPI exception handlers.

5xx responses carry a generic message; the full error is logged with a request id.
"""
import uuid
import traceback
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger


class ClinicError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(ClinicError):
    """Caller-supplied data failed validation. Never retried."""
    status_code = 400


class UnauthorizedError(ClinicError):
    """Webhook signature missing or wrong."""
    status_code = 401


class NotFoundError(ClinicError):
    status_code = 404


class ConflictError(ClinicError):
    status_code = 409


class JobBusyError(ConflictError):
    """A periodic job was triggered while it was already running."""


class StoreUnavailable(ClinicError):
    status_code = 503
    retryable = True


class TransportError(ClinicError):
    status_code = 503
    retryable = True


class ModelError(ClinicError):
    status_code = 503
    retryable = True


class Unavailable(ClinicError):
    status_code = 503
    retryable = True


class FatalError(ClinicError):
    """Invariant violation, e.g. a persisted row that cannot be decoded."""
    status_code = 500


class ClassifierDegraded(ClinicError):
    """Triage fell back from the model's full answer. Carried on results and logged, not raised."""


def error_body(message: str, request_id: str, details: Optional[Any] = None) -> dict:
    error = {"message": message, "requestId": request_id}
    if details is not None:
        error["details"] = details
    return {"success": False, "error": error}


async def clinic_error_handler(request: Request, exc: ClinicError) -> JSONResponse:
    request_id = str(uuid.uuid4())

    if exc.status_code >= 500:
        logger.bind(request_id=request_id).error(
            f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}"
        )
        if isinstance(exc, FatalError):
            await _notify_admin(request, exc, request_id)
        message = (
            "Service temporarily unavailable" if exc.status_code == 503
            else "An error occurred while processing your request"
        )
        return JSONResponse(status_code=exc.status_code, content=error_body(message, request_id))

    logger.bind(request_id=request_id).warning(
        f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}"
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.message, request_id, exc.details),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies use the same 400 shape as pipeline validation."""
    request_id = str(uuid.uuid4())
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    logger.bind(request_id=request_id).warning(f"Request validation failed: {request.method} {request.url.path}")
    return JSONResponse(status_code=400, content=error_body("Validation failed", request_id, details))


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = str(uuid.uuid4())
    logger.bind(
        request_id=request_id,
        error_type=type(exc).__name__,
        traceback=traceback.format_exc(),
    ).error(f"Request failed: {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content=error_body("An error occurred while processing your request", request_id),
    )


async def _notify_admin(request: Request, exc: FatalError, request_id: str) -> None:
    services = getattr(request.app.state, "services", None)
    if services is None:
        return
    try:
        await services.notifier.send_error_alert(
            error_type="fatal_error",
            message=f"{exc.message} (request {request_id}, {request.method} {request.url.path})",
        )
    except Exception as e:
        logger.error(f"Failed to send fatal error alert: {e}")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ClinicError, clinic_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, global_exception_handler)
