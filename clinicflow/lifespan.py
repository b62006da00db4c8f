from contextlib import asynccontextmanager

import aiohttp
from fastapi import FastAPI
from loguru import logger

from clinicflow.dependencies import build_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting...")
    settings = app.state.settings

    app.state.http_session = None
    if getattr(app.state, "services", None) is None:
        app.state.http_session = aiohttp.ClientSession()
        logger.info("HTTP session created")
        app.state.services = build_services(settings, app.state.http_session)
    services = app.state.services

    await services.repo.initialize()
    logger.info(f"Store ready ({services.store.backend_name})")

    if settings.scheduler_enabled:
        services.scheduler.start()
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false); use /trigger endpoints")

    logger.info("Application ready")

    yield

    logger.info("Shutdown signal received...")
    await services.scheduler.stop()
    await services.store.close()
    if app.state.http_session is not None:
        await app.state.http_session.close()
        logger.info("HTTP session closed")
    logger.info("Graceful shutdown complete")
