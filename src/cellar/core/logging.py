"""
structlog configuration for Cellar.

Records from Cellar and from third-party libraries go through the standard
library's root logger, so they share handlers and levels. Logs are written
to stderr; stdout carries command results only.
"""
import logging
import sys
from typing import Optional, TextIO

import structlog
from structlog.types import Processor

LOGGER_PREFIX = "cellar"

# aiosqlite logs every statement at DEBUG
_QUIET_LOGGERS = ("aiosqlite",)

_SHARED_PROCESSORS: tuple[Processor, ...] = (
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
)


def _resolve_level(level: str) -> int:
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _renderers(json_output: bool, stream: TextIO) -> list[Processor]:
    if json_output:
        return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=stream.isatty())]


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> structlog.stdlib.BoundLogger:
    """Configure structlog and the root logger.

    Each call replaces the handlers installed by the previous one.

    Args:
        level: Level name; unknown names fall back to INFO.
        json_output: Render one JSON object per line instead of console text.
        log_file: Also append records to this file.
        stream: Console stream (defaults to stderr).

    Returns:
        The ``cellar`` root logger.
    """
    log_level = _resolve_level(level)
    stream = stream or sys.stderr

    handlers: list[logging.Handler] = [logging.StreamHandler(stream)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(format="%(message)s", level=log_level, handlers=handlers, force=True)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.INFO))

    structlog.configure(
        processors=[*_SHARED_PROCESSORS, *_renderers(json_output, stream)],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return get_logger()


def get_logger(name: str = LOGGER_PREFIX) -> structlog.stdlib.BoundLogger:
    """Logger named ``cellar.<name>``; names already under ``cellar`` are kept."""
    if name != LOGGER_PREFIX and not name.startswith(f"{LOGGER_PREFIX}."):
        name = f"{LOGGER_PREFIX}.{name}"
    return structlog.get_logger(name)
