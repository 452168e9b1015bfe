"""Structured logging configuration using structlog."""

import logging
import socket
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from axremediation.core.config import Settings, get_settings

# Event keys that may carry credentials from rule parameters or headers
SECRET_KEYS = frozenset({"authorization", "password", "secret", "token", "api_key"})

# Client libraries that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore")


def redact_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask values of credential-like keys, including inside nested dicts."""
    for key, value in event_dict.items():
        if key.lower() in SECRET_KEYS and value:
            event_dict[key] = "***"
        elif isinstance(value, dict):
            event_dict[key] = redact_secrets(logger, method_name, dict(value))
    return event_dict


def service_context(settings: Settings, role: str) -> Processor:
    """Processor stamping every event with the emitting engine instance."""
    context = {
        "service": settings.app_name,
        "role": role,
        "host": socket.gethostname(),
    }

    def add_service_context(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in context.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_service_context


def setup_logging(role: str = "engine", settings: Settings | None = None) -> None:
    """Configure structured logging for an engine process.

    Args:
        role: Process role stamped on every event
        settings: Settings to use (defaults to the cached settings)
    """
    settings = settings or get_settings()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        service_context(settings, role),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.debug:
        processors: list[Processor] = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    level = getattr(logging, settings.log_level)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # Route stdlib loggers (redis, httpx) to the same stream
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str | None = None, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """Get a logger instance with optional initial context values."""
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger
