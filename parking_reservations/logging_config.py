"""
Structured logging configuration using structlog
JSON logs in production, coloured console output for local development
"""
import logging
import structlog
from typing import Any, Optional

from .config import settings


def add_app_context(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Add application-level context to all log entries"""
    event_dict.setdefault('app', settings.app_name)
    event_dict.setdefault('environment', settings.environment)
    return event_dict


def drop_color_message_key(logger: Any, method_name: str, event_dict: dict) -> dict:
    """
    Remove the 'color_message' key from the event dict.
    Some stdlib handlers add it for coloured output, JSON logs don't want it.
    """
    event_dict.pop('color_message', None)
    return event_dict


def configure_logging(log_level: Optional[str] = None, json_logs: Optional[bool] = None):
    """
    Configure structured logging for the engine

    Args:
        log_level: Logging level, defaults to settings.log_level
        json_logs: If True, output JSON logs. Defaults to settings.json_logs

    Returns:
        Configured structlog logger

    Usage:
        from parking_reservations.logging_config import configure_logging
        logger = configure_logging("INFO")

        logger.info("reservation_created",
            reservation_id=str(reservation.id),
            space_id=str(reservation.space_id),
            start_time=reservation.start_time.isoformat()
        )
    """
    log_level = (log_level or settings.log_level).upper()
    if json_logs is None:
        json_logs = settings.json_logs

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        add_app_context,
        drop_color_message_key,
    ]

    if json_logs:
        renderer = structlog.processors.JSONRenderer()
        shared_processors.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[structlog.stdlib.filter_by_level] + shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Route stdlib loggers (stores, locks) through the same renderer
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    return structlog.get_logger()


def get_logger(name: Optional[str] = None):
    """
    Get a logger instance with optional name

    Usage:
        from parking_reservations.logging_config import get_logger
        logger = get_logger(__name__)
        logger.info("expiry_scan_completed", expired=3)
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
