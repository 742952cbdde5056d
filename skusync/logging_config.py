"""
logging_config.py — Loguru setup for the sync service

Reconcile passes, webhook actions and platform retries log with keyword
context (sku, job_id, platform), so production emits one JSON object per
line with those fields intact; development gets a colored console line.
Stdlib records from uvicorn, httpx, apscheduler and sqlalchemy are
forwarded into Loguru, with the chattiest of them held at WARNING.

Called by: skusync/main.py (on startup)
Depends on: skusync/config.py (log_level, app_url via is_production)
"""

import logging
import sys

from loguru import logger

from .config import get_settings


def setup_logging() -> None:
    """Configure Loguru and intercept stdlib logging.

    Call once at app startup, before anything else logs.
    """
    logger.remove()

    settings = get_settings()
    log_level = settings.log_level.upper()

    if settings.is_production:
        logger.add(
            sys.stdout,
            level=log_level,
            format="{message}",
            serialize=True,
        )
    else:
        logger.add(
            sys.stdout,
            level=log_level,
            format=(
                "<green>{time:HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "{message}"
            ),
            colorize=True,
        )

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    for noisy in ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine", "apscheduler"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.info("Logging configured", level=log_level, production=settings.is_production)


class _InterceptHandler(logging.Handler):
    """Route stdlib logging records to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip frames from stdlib logging internals
        frame, depth = logging.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )
