"""
Structured logging.

JSON lines in production, key/value console output while DEBUG is on. Every
record carries the service name and any context bound through
structlog.contextvars (request id, session id).
"""
import logging
import sys

import structlog

from chatrelay.config import settings

# libraries that are chatty at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite", "multipart")


def _add_service(logger, method_name, event_dict):
    event_dict.setdefault("service", settings.APP_NAME)
    return event_dict


def configure_logging(level: int = logging.INFO, json_output: bool | None = None):
    """Configure stdlib logging and structlog; returns the root structlog logger."""
    if json_output is None:
        json_output = not settings.DEBUG

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        _add_service,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


logger = configure_logging()


def get_logger(**context):
    """
    Logger with context bound.

    Usage:
        log = get_logger(component="session_registry", session_id=session_id)
        log.info("session_connected", phone_number=phone)
    """
    return logger.bind(**context)
