"""Structured logging configuration using structlog.

Provides JSON-structured logging in production and human-readable colored
output in development. Listener and monitor loggers carry the network name
and id so interleaved output from concurrent networks stays traceable.

Usage:
    from escrow_sync.logging_config import setup_logging, get_logger
    setup_logging(log_level="DEBUG", json_logs=False)
    logger = get_logger()
    logger.info("reconciler.event_applied", event_name="EscrowCreated", network_id=3)
"""

from __future__ import annotations

import logging
import sys

import structlog

_NOISY_LOGGERS = (
    "uvicorn.access",
    "sqlalchemy.engine",
    "httpx",
    "httpcore",
    "websockets",
    "web3",
    "apscheduler",
    "solana",
)


def setup_logging(log_level: str = "DEBUG", json_logs: bool = False) -> None:
    """Configure structlog with shared processors.

    Args:
        log_level: Standard Python log level string (DEBUG, INFO, WARNING, etc.)
        json_logs: If True, output JSON (for production). If False, colored console.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.DEBUG))

    for noisy_logger in _NOISY_LOGGERS:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Optional logger name. If None, uses the calling module's name.

    Returns:
        A bound structlog logger with context variable support.
    """
    return structlog.get_logger(name)
