"""
Logging Configuration
====================

structlog on top of the standard library ``logging`` tree.

Console output is human readable outside production and JSON in production.
Outside test runs, records are also written to rotating files under
``{storage_path}/logs``: everything to ``pagesnap.log``, errors to
``error.log`` and the rendering subsystem to ``capture.log``. A request id
bound with ``bind_request_context`` is attached to every record emitted while
the request is handled.
"""

import logging
import logging.config
import sys
from pathlib import Path
from typing import Any, Dict, List, TYPE_CHECKING

import structlog
from structlog.types import Processor

from .settings import get_settings

if TYPE_CHECKING:
    from .settings import Settings

ROTATE_MAX_BYTES = 10 * 1024 * 1024
ROTATE_BACKUPS = 5

# Third-party loggers capped at these levels regardless of settings.log_level
LIBRARY_LEVELS = {
    "uvicorn": "INFO",
    "uvicorn.access": "WARNING",
    "celery": "INFO",
    "playwright": "WARNING",
    "asyncio": "WARNING",
    "aiohttp": "WARNING",
}

RENDERING_LOGGER = "pagesnap.core.rendering"


def setup_logging() -> None:
    """Configure structlog and the stdlib handlers from settings."""
    settings = get_settings()

    processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.environment == "production":
        processors.append(structlog.processors.JSONRenderer(ensure_ascii=False))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=settings.environment == "development"))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.config.dictConfig(get_logging_config(settings))


def _rotating_handler(filename: Path, level: str) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": level,
        "formatter": "detailed",
        "filename": str(filename),
        "maxBytes": ROTATE_MAX_BYTES,
        "backupCount": ROTATE_BACKUPS,
        "encoding": "utf-8",
    }


def get_logging_config(settings: "Settings") -> Dict[str, Any]:
    """Build the ``dictConfig`` mapping for the given settings."""
    log_dir = settings.storage_path / "logs"
    writes_files = settings.environment != "testing"

    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": settings.log_level,
            "formatter": "json" if settings.environment == "production" else "standard",
            "stream": sys.stdout,
        },
    }
    app_handlers = ["console"]
    rendering_handlers: List[str] = []
    if writes_files:
        handlers["file"] = _rotating_handler(log_dir / "pagesnap.log", settings.log_level)
        handlers["error_file"] = _rotating_handler(log_dir / "error.log", "ERROR")
        handlers["capture_file"] = _rotating_handler(log_dir / "capture.log", settings.log_level)
        app_handlers = ["console", "file", "error_file"]
        rendering_handlers = ["capture_file"]

    loggers: Dict[str, Any] = {
        "": {"level": settings.log_level, "handlers": app_handlers, "propagate": False},
        # Rendering records go to the root handlers and to capture.log
        RENDERING_LOGGER: {
            "level": settings.log_level,
            "handlers": rendering_handlers,
            "propagate": True,
        },
    }
    for name, level in LIBRARY_LEVELS.items():
        loggers[name] = {"level": level, "handlers": ["console"], "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "detailed": {
                "format": "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "json": {
                "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s",
            },
        },
        "handlers": handlers,
        "loggers": loggers,
    }


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_request_context(**values: Any) -> None:
    """Attach values such as ``request_id`` to every record in the current task."""
    structlog.contextvars.bind_contextvars(**values)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def ensure_log_directories() -> None:
    settings = get_settings()
    (settings.storage_path / "logs").mkdir(parents=True, exist_ok=True)


# Initialize logging on import
ensure_log_directories()
setup_logging()
