"""Logging infrastructure for sql_bridge.

Every component takes an optional injected logger implementing
LoggerProtocol. When none is given it builds one here, bound to its
component name.

Usage:
    from sql_bridge.logging import configure_logging, create_logger

    configure_logging("DEBUG", json_output=False)
    logger = create_logger("correlation_engine", worker_pid=1234)
    logger.info("query_sent", msg_id=1)
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Dict, Optional

import structlog

from sql_bridge.protocols import LoggerProtocol

# Module state
_CONFIGURED = False


class Logger:
    """LoggerProtocol implementation backed by structlog."""

    def __init__(
        self,
        base_logger: Any = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        """Initialize logger.

        Args:
            base_logger: Underlying structlog logger (created if None)
            context: Bound context fields
        """
        self._logger = base_logger or structlog.get_logger()
        self._context = context or {}

        if self._context:
            self._logger = self._logger.bind(**self._context)

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._logger.debug(msg, **kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self._logger.info(msg, **kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._logger.warning(msg, **kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self._logger.error(msg, **kwargs)

    def exception(self, msg: str, **kwargs: Any) -> None:
        """Log at ERROR level with the active exception's traceback."""
        self._logger.exception(msg, **kwargs)

    def bind(self, **kwargs: Any) -> "Logger":
        """Create child logger with additional context."""
        return Logger(
            base_logger=structlog.get_logger(),
            context={**self._context, **kwargs},
        )

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self._context)


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    force: bool = False,
) -> None:
    """Configure stdlib logging and structlog for the process.

    Call once at application startup. Later calls are ignored unless
    ``force`` is set.

    Args:
        level: Default log level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, render JSON lines; if False, console format
        force: Reconfigure even if already configured
    """
    global _CONFIGURED

    if _CONFIGURED and not force:
        return

    log_level = getattr(logging, level.upper(), logging.INFO)

    # stderr, never stdout: the CLI prints query results on stdout
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        stream=sys.stderr,
        force=force,
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)

    if json_output:
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            timestamper,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    _CONFIGURED = True


def is_configured() -> bool:
    return _CONFIGURED


def create_logger(component: str, **context: Any) -> LoggerProtocol:
    """Create a logger for dependency injection.

    Args:
        component: Component name (e.g., "worker_channel", "sql_bridge")
        **context: Additional context to bind

    Returns:
        LoggerProtocol implementation
    """
    return Logger(context={"component": component, **context})


def get_component_logger(
    component: str,
    logger: Optional[LoggerProtocol] = None,
) -> LoggerProtocol:
    """Bind ``component`` onto an injected logger, or create a fresh one.

    This is the canonical way for a class to initialize its logger.
    """
    if logger is None:
        return create_logger(component)
    return logger.bind(component=component)


__all__ = [
    "Logger",
    "configure_logging",
    "is_configured",
    "create_logger",
    "get_component_logger",
]
