"""Logging configuration shared by the services."""

import logging
import os


def setup_logging(service_name: str, level: str | None = None) -> None:
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=level,
        format=f"%(asctime)s [{service_name}] %(levelname)s %(name)s: %(message)s",
    )

    # Suppress noisy library loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
