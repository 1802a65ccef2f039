"""
Structured logging for the monitor and its children.

Every process in a refork tree (monitor, molds, workers) logs through
structlog.  The monitor configures logging once at startup; children
inherit the configuration through ``fork`` and only bind their own
identity (``role``, ``pid``, ``generation``) so interleaved output on
the shared stderr stays attributable.

Architecture:
    ::

        configure_logging(level="INFO", json_format=False, service="refork")
            │
            ▼
        processor chain:
          1. filter_by_level
          2. merge_contextvars        (role / pid / generation bound in children)
          3. TimeStamper(fmt="iso")
          4. add_log_level
          5. add_logger_name
          6. service metadata
          7. ConsoleRenderer  |  JSONRenderer
            │
            ▼
        stdlib logging, one handler on stderr

Examples:
    >>> from refork.core.logging import configure_logging, get_logger
    >>> configure_logging(level="DEBUG")
    >>> logger = get_logger(__name__)
    >>> logger.info("mold_ready", generation=1)

    Inside a child after fork:

    >>> bind_context(role="worker", pid=4242, generation=1)

Guardrails:
    - Output goes to stderr by default; stdout belongs to the application
    - Configuration is process-global and survives ``fork``
    - Context variables are per-process once forked, never shared

Tags:
    logging, structlog, observability, refork

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import logging
import sys
from typing import IO, Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "refork"


def _add_service_metadata(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service", _SERVICE_NAME)
    return event_dict


def _level_number(level: str | int) -> int:
    if isinstance(level, int):
        return level
    number = logging.getLevelName(level.upper())
    if not isinstance(number, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return number


def configure_logging(
    level: str | int = "INFO",
    json_format: bool = False,
    service: str = "refork",
    stream: IO[str] | None = None,
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for the process tree.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR) or number
        json_format: True for one JSON object per line, False for console output
        service: Service name included in every entry
        stream: Output stream, stderr when omitted
        add_timestamp: Include ISO timestamp in logs

    Raises:
        ValueError: If ``level`` is not a known level name
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    output = stream if stream is not None else sys.stderr
    numeric_level = _level_number(level)

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _add_service_metadata,
    ]
    if add_timestamp:
        processors.insert(2, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=output.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    logging.basicConfig(format="%(message)s", stream=output, level=numeric_level, force=True)


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger.

    Args:
        name: Logger name (usually __name__)
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context to include in all subsequent logs of this process."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context."""
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Context manager for scoped logging context.

    Example:
        with LogContext(role="mold", generation=2):
            logger.info("hook_started")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        unbind_context(*self._context.keys())


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
