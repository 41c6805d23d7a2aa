"""Structured logging for the sync engine.

Every record carries the session context bound by bind_session_context()
(session id and remote backend), so log lines from concurrent sessions in one
process can be told apart.
"""

import logging
import sys
import uuid
from pathlib import Path
from typing import List

import structlog

from core.config import Settings

# Client libraries that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "aiohttp")


def _handlers(settings: Settings, level: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def configure_logging(settings: Settings) -> None:
    """Configure stdlib handlers and the structlog pipeline from settings."""
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(level=level, handlers=_handlers(settings, level),
                        format="%(message)s")
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))
        processors.insert(0, structlog.stdlib.add_logger_name)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.insert(0, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
        processors.append(structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=35,
            exception_formatter=structlog.dev.plain_traceback
        ))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def bind_session_context(settings: Settings) -> str:
    """Tag every following log line of this task with a fresh session id."""
    session_id = uuid.uuid4().hex[:12]
    structlog.contextvars.bind_contextvars(session_id=session_id,
                                           remote_backend=settings.remote_backend)
    return session_id


def clear_session_context() -> None:
    structlog.contextvars.unbind_contextvars("session_id", "remote_backend")


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def log_cache_operation(logger: structlog.BoundLogger, operation: str,
                        key: str, hit: bool = None, **kwargs) -> None:
    """Log cache operations."""
    log_data = {
        "operation": operation,
        "cache_key": key,
        **kwargs
    }

    if hit is not None:
        log_data["cache_hit"] = hit

    logger.debug("Cache operation", **log_data)


def log_sync_operation(logger: structlog.BoundLogger, operation: str,
                       kind: str, success: bool, **kwargs) -> None:
    """Log remote write attempts (batch flushes, queue replays) in one format."""
    log = logger.info if success else logger.warning
    log(
        "Sync operation completed",
        operation=operation,
        kind=kind,
        success=success,
        **kwargs
    )
