"""structlog configuration and custom log sinks."""

from __future__ import annotations

import logging
import sys
from typing import Any, Callable

import structlog

from idlestop.settings import settings


def configure_logging() -> None:
    """Configure structlog for the hosting process.

    Level comes from ``IDLE_STOP_LOG_LEVEL``; ``IDLE_STOP_LOG_FORMAT=json``
    switches the console renderer for JSON lines.
    """
    level = logging.getLevelName(settings.log_level().upper())
    if not isinstance(level, int):
        level = logging.INFO
    if settings.log_format() == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


class SinkLogger:
    """Minimal structlog output logger that hands each rendered line to a callable."""

    def __init__(self, sink: Callable[[str], None]) -> None:
        self._sink = sink

    def msg(self, message: str) -> None:
        self._sink(message)

    log = debug = info = warn = warning = msg
    err = error = critical = exception = fatal = failure = msg


def make_sink_logger(sink: Callable[[str], None], name: str) -> Any:
    """Return a bound logger that renders one plain-text line per event into ``sink``.

    Args:
        sink: Callable receiving the rendered line.
        name: Logger name bound into every event.
    """
    return structlog.wrap_logger(
        SinkLogger(sink),
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
    ).bind(logger=name)
