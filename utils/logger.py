"""
Logging setup — structlog on top of stdlib logging.

Every module logs through ``structlog.get_logger()`` with an event name
first and key/value context after it. This module wires the renderers:
colored console output for development, JSON for production, plus an
optional rotating JSON log file and a separate error-only file.
"""
from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path

import structlog

from config.settings import LoggingConfig

_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 5


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def configure_logging(config: LoggingConfig = None, production: bool = False) -> None:
    """Configure structlog and the stdlib root logger from settings."""
    config = config or LoggingConfig()
    level = _level(config.level)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    json_formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )
    if config.json or production:
        console_formatter = json_formatter
    else:
        console_formatter = structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
            ],
        )

    handlers: list[logging.Handler] = []

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(console_formatter)
    handlers.append(console)

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT,
        )
        file_handler.setFormatter(json_formatter)
        handlers.append(file_handler)

        error_path = log_path.with_name(log_path.stem + ".error" + log_path.suffix)
        error_handler = logging.handlers.RotatingFileHandler(
            error_path, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT,
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(json_formatter)
        handlers.append(error_handler)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)

    # uvicorn's access log goes through the same handlers
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).handlers.clear()
        logging.getLogger(name).propagate = True
