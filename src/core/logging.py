"""
Structured logging for the vehicle search service (structlog).

Console output in development, one JSON object per line in production.
Request-scoped context (request_id, path, session_id) bound by the tracing
middleware is merged into every line.

Usage:
    from core.logging import configure_logging, get_logger

    configure_logging(json_logs=settings.is_production, log_level="INFO")

    logger = get_logger(__name__)
    logger.info("Composed query", query_type="filtered", groups=2)
    logger.warning("Failed to parse price", value="abc", error=str(e))
"""

import logging
import sys
from typing import Any, List, Optional

import structlog
from structlog.types import Processor


# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "openai", "uvicorn.access")


def configure_logging(
    json_logs: bool = False,
    log_level: str = "INFO",
    include_timestamp: bool = True,
) -> None:
    """
    Configure structlog and the stdlib root logger. Call once at startup.

    Args:
        json_logs: JSON renderer (production) instead of the console renderer
        log_level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        include_timestamp: Prefix each event with an ISO timestamp
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if include_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))

    if json_logs:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(
            colors=sys.stdout.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        ))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger().setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Logger for a module; pass __name__."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """
    Attach key/value pairs to every log line in the current context.

    Usage:
        bind_context(request_id="abc", session_id="s-1")
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Drop all bound context. Called at the end of every request."""
    structlog.contextvars.clear_contextvars()
