from __future__ import annotations

import logging
import sys

import structlog


LEVEL_MAP = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

BACKEND_FAILURE = "generation_backend"
DELIVERY_FAILURE = "delivery"


def create_logger(level: str, name: str = "answerbot"):
    resolved = LEVEL_MAP.get(level.lower(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=resolved)
    # discord.py is chatty at INFO; keep its gateway noise out of the JSON stream.
    logging.getLogger("discord").setLevel(max(resolved, logging.WARNING))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
    )
    return structlog.get_logger(name)
