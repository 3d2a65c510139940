"""
Structured logging setup — structlog on top of stdlib logging.

Every module does `logger = structlog.get_logger()` and logs event names with
keyword context; this module only decides how those events are rendered.
"""
from __future__ import annotations

import logging
import sys

import structlog

from config.settings import LoggingConfig


def configure_logging(config: LoggingConfig = None) -> None:
    """Configure structlog + stdlib logging once at process start."""
    config = config or LoggingConfig()
    level = getattr(logging, config.level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if config.json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.get_logger().info("logging_configured", level=config.level, json=config.json)
