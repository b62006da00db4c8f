"""
Loguru sinks for the clinicflow service.

Pipelines bind the record they are working on (form_id, external_event_id,
job) with logger.bind(); local output shows those fields after the message and
production emits one JSON object per line with them under "extra".
"""

import os
import sys
import logging
from typing import Optional

from loguru import logger

SERVICE_NAME = "clinicflow"

# Client libraries used for the model, calendar and booking APIs
NOISY_LIBRARIES = ['httpx', 'httpcore', 'urllib3', 'openai', 'aiohttp.access']

LOCAL_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level> {extra}"
)


def _debug_from_env() -> bool:
    return os.getenv("DEBUG", "false").lower() in ["true", "1", "yes"]


def setup_logging(env: Optional[str] = None, debug: Optional[bool] = None):
    env = env or os.getenv("ENV", "local")
    if debug is None:
        debug = _debug_from_env()
    level = "DEBUG" if debug else "INFO"

    logger.remove()
    logger.configure(extra={"service": SERVICE_NAME} if env == "production" else {})

    if env == "production":
        logger.add(sys.stderr, level=level, format="{message}", serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=LOCAL_FORMAT)

    for lib in NOISY_LIBRARIES:
        logging.getLogger(lib).setLevel(logging.WARNING)

    logger.debug(f"Logging configured (env={env}, level={level})")
