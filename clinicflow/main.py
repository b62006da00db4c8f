from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from clinicflow import __version__
from clinicflow.api import appointments, dashboard, health, triggers, webhooks
from clinicflow.api.limits import configure_rate_limit, limiter
from clinicflow.config import Settings, load_settings
from clinicflow.dependencies import Services
from clinicflow.exceptions import register_exception_handlers
from clinicflow.lifespan import lifespan


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Build the API. A prebuilt Services container skips wiring in the lifespan."""
    settings = settings or (services.settings if services is not None else load_settings())

    app = FastAPI(
        title="Clinic Intake & Notification Service",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services

    configure_rate_limit(settings.webhook_rate_limit)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    if settings.allowed_origins:
        logger.info(f"CORS allowed origins: {list(settings.allowed_origins)}")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.allowed_origins),
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["Content-Type", "Calendly-Webhook-Signature"],
            max_age=600,
        )

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Health"])
    app.include_router(webhooks.router, prefix="/webhook", tags=["Webhooks"])
    app.include_router(triggers.router, prefix="/trigger", tags=["Triggers"])
    app.include_router(dashboard.router, tags=["Dashboard"])
    app.include_router(appointments.router, prefix="/appointments", tags=["Appointments"])
    return app
