# logging.py

import logging
import os
from logging.handlers import RotatingFileHandler

import structlog
from structlog.contextvars import merge_contextvars

from Adaptorium.config import Settings, load_settings

# Loggers that attach their own handlers; route them through the root instead
_ADOPTED_LOGGERS = ("asyncio", "alembic", "sqlalchemy.engine")


def _level(name: str | None, default: int) -> int | None:
    """Map a level name to a stdlib level; ``NONE`` disables the handler."""
    if not name:
        return default
    if name.upper() == "NONE":
        return None
    return getattr(logging, name.upper(), default)


def _formatter() -> structlog.stdlib.ProcessorFormatter:
    # Renders structlog events and foreign stdlib records alike as JSON lines
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=[
            merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
        ],
    )


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog on top of stdlib logging.

    Console and file handlers take their own levels from ``logging_console``
    and ``logging_file``; either may be ``NONE``. The file handler rotates at
    ``logging_max_bytes``.
    """
    settings = settings or load_settings()
    overall = _level(settings.logging_level, logging.INFO) or logging.INFO
    formatter = _formatter()
    handlers: list[logging.Handler] = []

    console_level = _level(settings.logging_console, overall)
    if console_level is not None:
        console = logging.StreamHandler()
        console.setLevel(console_level)
        console.setFormatter(formatter)
        handlers.append(console)

    file_level = _level(settings.logging_file, overall)
    if file_level is not None:
        path = settings.logging_file_path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        file_handler = RotatingFileHandler(
            path,
            maxBytes=settings.logging_max_bytes,
            backupCount=settings.logging_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root_level = min((h.level for h in handlers), default=overall)
    logging.captureWarnings(True)
    logging.basicConfig(level=root_level, handlers=handlers, force=True)
    for name in _ADOPTED_LOGGERS:
        adopted = logging.getLogger(name)
        adopted.handlers = []
        adopted.propagate = True

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def redact_settings(settings: Settings) -> dict:
    """Settings as a dict with the database password masked."""
    data = settings.model_dump()
    url = data.get("database_url") or ""
    if "@" in url:
        scheme, _, rest = url.partition("://")
        data["database_url"] = f"{scheme}://[REDACTED]@{rest.split('@', 1)[1]}"
    return data
