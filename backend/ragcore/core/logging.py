"""
Structured logging setup.

Services log event names with key/value context:

    logger = get_logger(__name__)
    logger.info("chunks_indexed", content_unit_id=unit_id, count=12)

structlog renders these as JSON (LOG_FORMAT=json) or as colored console
lines (LOG_FORMAT=text). Stdlib loggers (``logging.getLogger``) and
third-party libraries are routed through the same handler, so everything
ends up in one stream with one format.
"""

import logging
import sys
from typing import Any, Optional

import structlog

from ragcore.core.config import settings


_configured = False


def setup_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Safe to call more than once; later calls reconfigure.

    Args:
        level: Log level name (default from settings.LOG_LEVEL)
        log_format: "json" or "text" (default from settings.LOG_FORMAT)
    """
    global _configured

    level_name = (level or settings.LOG_LEVEL).upper()
    fmt = log_format or settings.LOG_FORMAT

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if fmt == "json":
        renderer: Any = structlog.processors.JSONRenderer()
        shared_processors.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level_name)

    # Quiet noisy libraries
    for noisy in ("sentence_transformers", "httpx", "openai", "urllib3", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DB_ECHO else logging.WARNING
    )

    _configured = True


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger.

    Args:
        name: Logger name, usually ``__name__``

    Returns:
        structlog BoundLogger accepting ``event`` plus keyword context
    """
    return structlog.stdlib.get_logger(name)
