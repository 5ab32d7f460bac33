"""Structured logging built on structlog."""

import logging
import sys
from contextlib import AbstractContextManager
from typing import Any

import structlog

_LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structlog and the standard library root logger.

    Args:
        level: Log level name. Unknown names fall back to INFO.
        json_output: Render events as JSON lines instead of the colored
            console format.
    """
    name = level.upper()
    log_level = getattr(logging, name) if name in _LEVEL_NAMES else logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger named after the calling module."""
    return structlog.get_logger(name)


def log_context(**kwargs: Any) -> AbstractContextManager[None]:
    """
    Bind key/value pairs to every log event emitted inside the block.

    Example:
        with log_context(table="trips", source="citibike"):
            log.info("Loading")  # carries table and source
    """
    return structlog.contextvars.bound_contextvars(**kwargs)
