"""Structured logging setup.

JSON output in production, human-readable console output otherwise.
Library modules only call ``structlog.get_logger(__name__)``; the
embedding application calls ``configure_structlog`` once at startup.
"""

from __future__ import annotations

import logging

import structlog

from src.context_engine.config import ContextEngineSettings, Environment, get_settings


def configure_structlog(settings: ContextEngineSettings | None = None) -> None:
    """Configure structlog processors based on environment."""
    settings = settings or get_settings()

    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

    shared_processors: list = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.environment == Environment.production:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
