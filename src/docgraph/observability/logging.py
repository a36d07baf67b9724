"""
Configures structured logging for the application using structlog.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any, List

import structlog

if TYPE_CHECKING:
    from docgraph.config.config import MonitoringConfig

# --- Configuration ---


def configure_logging(config: MonitoringConfig) -> None:
    """
    Sets up structlog to handle all logging for the application.
    """
    shared_processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    log_renderer: Any
    if config.log_file:
        # Structured JSON logging for file output
        log_renderer = structlog.processors.JSONRenderer()
        handler: logging.Handler = logging.FileHandler(config.log_file)
    else:
        log_renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
        handler = logging.StreamHandler(sys.stdout)

    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                log_renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(config.log_level.upper())

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logger = structlog.get_logger("docgraph.logging")
    logger.info("Logging configured", level=config.log_level, output=config.log_file or "console")
