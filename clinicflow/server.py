import os

import uvicorn
from loguru import logger

from clinicflow.config import load_settings, validate_startup
from clinicflow.logging_config import setup_logging
from clinicflow.main import create_app


def main() -> None:
    settings = load_settings()
    setup_logging(settings.env)
    validate_startup(settings)

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logger.info(f"Starting clinicflow on {host}:{port} (env={settings.env})")

    uvicorn.run(create_app(settings), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
