"""Logging configuration for Hobbes.

Turn code binds the active session id with ``bind_session``; every log line
emitted from that task (and the tool-dispatch tasks it spawns) carries it.
"""

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog

from hobbes.config import LoggingConfig, get_config


def _open_log_file(path: str) -> TextIO:
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    return target.open("a", encoding="utf-8", buffering=1)


def configure_logging(
    level: str | None = None,
    settings: LoggingConfig | None = None,
    stream: TextIO | None = None,
) -> None:
    """Configure structured logging for Hobbes.

    Args:
        level: Overrides the configured level (e.g. ``"DEBUG"`` for --verbose)
        settings: Logging section to use instead of the global config's
        stream: Explicit output; otherwise ``settings.file`` or stderr
    """
    settings = settings or get_config().logging
    log_level = getattr(logging, (level or settings.level).upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if stream is None:
        stream = _open_log_file(settings.file) if settings.file else sys.stderr

    if settings.format == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=stream.isatty()))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )


def bind_session(session_id: str) -> None:
    """Tag log lines from the current context with ``session_id``."""
    structlog.contextvars.bind_contextvars(session_id=session_id)


def unbind_session() -> None:
    structlog.contextvars.unbind_contextvars("session_id")


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


log = get_logger(__name__)
