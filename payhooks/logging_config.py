"""
Structured logging setup.

Webhook handlers bind ``request_id`` and ``provider`` through structlog
contextvars so every line emitted while reconciling an event carries them.
"""
import logging
import secrets
import sys
import time

import structlog

from payhooks.config import get_settings


def setup_logging() -> None:
    settings = get_settings()

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json" or settings.is_production
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level, logging.INFO))
    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root_logger.addHandler(handler)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def new_request_id(prefix: str = "wh") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.randbelow(10_000)}"
