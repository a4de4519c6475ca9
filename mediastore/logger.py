"""Structured logging configuration using structlog.

JSON output in production for log aggregation, console-friendly output
for local development. Storage modules log through structlog directly;
the application calls configure_logging() once at startup.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from mediastore.config import Settings, get_settings

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "password_hash",
        "token",
        "secret",
        "api_key",
        "authorization",
        "credentials",
        "cookie",
        "database_url",
        "redis_url",
    }
)


def add_log_level(_logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add log level to the event dict."""
    if method_name == "warn":
        # Structlog uses "warn", but we want "warning"
        event_dict["level"] = "warning"
    else:
        event_dict["level"] = method_name
    return event_dict


def censor_sensitive_data(
    _logger: logging.Logger, _method_name: str, event_dict: EventDict
) -> EventDict:
    """Censor sensitive data from log events.

    Masks fields whose name contains a password, token, connection string
    or similar keyword, including inside nested dicts.
    """

    def _censor_value(key: str, value: Any) -> Any:
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            return "***"
        if isinstance(value, dict):
            return {k: _censor_value(k, v) for k, v in value.items()}
        if isinstance(value, list):
            return [_censor_value(key, item) if isinstance(item, dict) else item for item in value]
        return value

    return {key: _censor_value(key, value) for key, value in event_dict.items()}


def configure_logging(config: Settings | None = None) -> None:
    """Configure structlog for the application.

    Args:
        config: Settings to read level and environment from (defaults to
            the process-wide settings)
    """
    config = config or get_settings()
    level = getattr(logging, config.log_level.upper())

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        censor_sensitive_data,
    ]

    if config.is_production:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=True,
            exception_formatter=structlog.dev.plain_traceback,
        )

    structlog.configure(
        processors=shared_processors
        + [
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
    root_logger.setLevel(level)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("storage_ready", storage_type="hybrid")
    """
    return structlog.get_logger(name)
