# utils/logging.py

"""Logging setup for the dialogue pipeline.

structlog events are rendered into standard ``logging`` records so the
console (rich or plain) and the optional rotating file share one format.
"""

from __future__ import annotations

import logging
import logging.handlers
import os

import structlog
from config import settings
from rich.logging import RichHandler

logger = structlog.get_logger(__name__)

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3
QUIET_LOGGERS = ("httpx", "httpcore")

__all__ = ["setup_logging"]


def _log_file_path(name: str) -> str:
    if os.path.isabs(name):
        return name
    return os.path.join(settings.DATA_DIR, "logs", name)


def _plain_formatter() -> logging.Formatter:
    return logging.Formatter(settings.LOG_FORMAT, datefmt=settings.LOG_DATE_FORMAT)


def _file_handler(name: str) -> logging.Handler | None:
    path = _log_file_path(name)
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            path,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
    except OSError as exc:
        logger.error("Error setting up file logger", path=path, error=str(exc))
        return None
    handler.setFormatter(_plain_formatter())
    return handler


def _console_handler() -> logging.Handler:
    if settings.ENABLE_RICH_LOGGING:
        return RichHandler(
            level=settings.LOG_LEVEL_STR,
            rich_tracebacks=True,
            show_path=False,
            markup=False,
        )
    handler = logging.StreamHandler()
    handler.setFormatter(_plain_formatter())
    return handler


def setup_logging() -> None:
    """Route structlog through stdlib logging and install the pipeline handlers."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(settings.LOG_LEVEL_STR)

    if settings.LOG_FILE:
        file_handler = _file_handler(settings.LOG_FILE)
        if file_handler is not None:
            root_logger.addHandler(file_handler)
    root_logger.addHandler(_console_handler())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "Dialogue pipeline logging configured",
        log_level=settings.LOG_LEVEL_STR,
        log_file=settings.LOG_FILE,
    )
