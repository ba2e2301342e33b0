"""Protocol and enum types shared across sql_bridge.

Components depend on these interfaces instead of concrete classes so that
loggers and worker channels can be injected (and faked in tests).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Optional, Protocol, runtime_checkable


class ConnectionState(Enum):
    """Lifecycle state of a bridge instance."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@runtime_checkable
class LoggerProtocol(Protocol):
    """Structured logging interface."""

    def info(self, message: str, **kwargs: Any) -> None: ...
    def debug(self, message: str, **kwargs: Any) -> None: ...
    def warning(self, message: str, **kwargs: Any) -> None: ...
    def error(self, message: str, **kwargs: Any) -> None: ...
    def exception(self, message: str, **kwargs: Any) -> None: ...
    def bind(self, **kwargs: Any) -> "LoggerProtocol": ...


MessageHandler = Callable[[Any], Any]
FaultHandler = Callable[[str], Any]
ExitHandler = Callable[[Optional[int]], Any]


@runtime_checkable
class WorkerChannelProtocol(Protocol):
    """What the connection lifecycle needs from a worker channel.

    Lifecycle: spawn -> handshake -> start -> (write_line)* -> terminate
    """

    async def spawn(self) -> None: ...
    async def handshake(self) -> str: ...

    def start(
        self,
        on_message: MessageHandler,
        on_fault: FaultHandler,
        on_exit: Optional[ExitHandler] = None,
    ) -> None: ...

    def write_line(self, line: str) -> None: ...
    async def drain(self) -> None: ...
    async def terminate(self) -> None: ...

    @property
    def listening(self) -> bool: ...


__all__ = [
    "ConnectionState",
    "LoggerProtocol",
    "WorkerChannelProtocol",
    "MessageHandler",
    "FaultHandler",
    "ExitHandler",
]
