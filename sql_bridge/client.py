"""Host-facing SQL bridge.

Drives the worker connection lifecycle and exposes query submission in two
styles: callback (``query``) and awaitable (``query_async``). Both share the
one correlation engine created for the current connection.

Usage:
    from sql_bridge import SqlBridge

    bridge = SqlBridge(host="db1", port=5000, database="prod",
                       username="sa", password="secret")
    await bridge.connect_async()
    rows = await bridge.query_async("select * from users")
    await bridge.disconnect()

    # or
    async with SqlBridge.open(host="db1", ...) as bridge:
        rows = await bridge.query_async("select 1")

State machine:
    DISCONNECTED/FAILED --connect--> CONNECTING
    CONNECTING --"connected"--> CONNECTED
    CONNECTING --spawn/handshake failure--> FAILED
    CONNECTED --disconnect--> DISCONNECTED
    CONNECTED --worker exit--> FAILED
    CONNECTED --channel fault, fail_on_channel_fault=True--> FAILED
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, AsyncIterator, Callable, List, Optional, Set

from sql_bridge.engine import CorrelationEngine, QueryCallback
from sql_bridge.ipc.channel import WorkerChannel
from sql_bridge.ipc.protocol import (
    ALREADY_CONNECTED,
    DISCONNECTED,
    HANDSHAKE_FAILED,
    NOT_CONNECTED,
    NOT_CONNECTED_MESSAGE,
    TIMEOUT,
    WORKER_EXITED,
    BridgeError,
    is_handshake,
)
from sql_bridge.logging import get_component_logger
from sql_bridge.protocols import ConnectionState, LoggerProtocol, WorkerChannelProtocol
from sql_bridge.settings import BridgeSettings, build_worker_command, get_settings

ConnectCallback = Callable[[Optional[Exception], Optional[str]], Any]
ChannelFactory = Callable[[List[str], BridgeSettings, LoggerProtocol], WorkerChannelProtocol]


def default_channel_factory(
    command: List[str],
    settings: BridgeSettings,
    logger: LoggerProtocol,
) -> WorkerChannelProtocol:
    return WorkerChannel(
        command,
        encoding=settings.encoding,
        line_limit=settings.line_limit,
        terminate_timeout=settings.terminate_timeout,
        logger=logger,
    )


def _ignore_result(error: Optional[BridgeError], result: Any) -> None:
    pass


class SqlBridge:
    """Query a database through a line-JSON worker process."""

    def __init__(
        self,
        settings: Optional[BridgeSettings] = None,
        *,
        logger: Optional[LoggerProtocol] = None,
        channel_factory: Optional[ChannelFactory] = None,
        **overrides: Any,
    ):
        """Initialize bridge.

        Args:
            settings: Base settings. Defaults to the process-wide get_settings().
            logger: Injected logger; one is created if None.
            channel_factory: Builds the worker channel (tests swap in fakes).
            **overrides: Settings fields that take precedence over ``settings``.
        """
        if settings is None:
            settings = get_settings()
        if overrides:
            settings = BridgeSettings(**{**settings.model_dump(), **overrides})
        self._settings = settings
        self._logger = get_component_logger("sql_bridge", logger)
        self._channel_factory = channel_factory or default_channel_factory
        self._state = ConnectionState.DISCONNECTED
        self._channel: Optional[WorkerChannelProtocol] = None
        self._engine: Optional[CorrelationEngine] = None
        self._background: Set[asyncio.Task] = set()

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        settings: Optional[BridgeSettings] = None,
        **kwargs: Any,
    ) -> AsyncIterator["SqlBridge"]:
        """Create a connected bridge as an async context manager."""
        bridge = cls(settings, **kwargs)
        async with bridge.session():
            yield bridge

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def settings(self) -> BridgeSettings:
        return self._settings

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def pending_count(self) -> int:
        return self._engine.pending_count if self._engine else 0

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect_async(self) -> str:
        """Start the worker and wait for its handshake.

        Returns:
            The handshake text (``connected``).

        Raises:
            BridgeError: ALREADY_CONNECTED, SPAWN_FAILED or HANDSHAKE_FAILED.
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            raise BridgeError(ALREADY_CONNECTED, f"Bridge is {self._state.value}")

        self._state = ConnectionState.CONNECTING
        command = build_worker_command(self._settings)
        channel = self._channel_factory(command, self._settings, self._logger)
        self._channel = channel
        timeout = self._settings.connect_timeout

        try:
            await channel.spawn()
            if timeout is None:
                line = await channel.handshake()
            else:
                line = await asyncio.wait_for(channel.handshake(), timeout=timeout)
        except asyncio.TimeoutError:
            await channel.terminate()
            self._connect_failed(channel)
            raise BridgeError(
                HANDSHAKE_FAILED, f"Worker did not complete handshake within {timeout}s",
            )
        except BridgeError:
            self._connect_failed(channel)
            raise
        except asyncio.CancelledError:
            await channel.terminate()
            self._connect_failed(channel)
            raise
        except Exception:
            self._logger.exception("bridge_connect_error")
            await channel.terminate()
            self._connect_failed(channel)
            raise

        if self._channel is not channel:
            # disconnect() ran while we waited for the handshake
            await channel.terminate()
            raise BridgeError(HANDSHAKE_FAILED, "Disconnected during handshake")

        if not is_handshake(line):
            self._logger.warning("worker_handshake_rejected", line=line[:200])
            await channel.terminate()
            self._connect_failed(channel)
            raise BridgeError(HANDSHAKE_FAILED, f"Error connecting {line}")

        engine = CorrelationEngine(
            channel.write_line,
            log_timing=self._settings.log_timing,
            verbose=self._settings.logs,
            logger=self._logger,
        )
        self._engine = engine
        self._state = ConnectionState.CONNECTED
        channel.start(
            engine.dispatch,
            partial(self._on_channel_fault, channel, engine),
            partial(self._on_worker_exit, channel, engine),
        )
        self._logger.info("bridge_connected", host=self._settings.host, port=self._settings.port)
        return line

    def connect(self, callback: ConnectCallback) -> "asyncio.Task[None]":
        """Callback flavour of connect_async.

        ``callback(error, data)`` is called exactly once, with
        ``(None, "connected")`` on success or ``(exception, None)``; the
        exception is a BridgeError except for unexpected failures.
        """
        async def run() -> None:
            try:
                data = await self.connect_async()
            except Exception as e:
                callback(e, None)
            else:
                callback(None, data)

        return self._spawn_background(run())

    async def disconnect(self) -> None:
        """Stop the worker. Queries still in flight fail with DISCONNECTED.

        A FAILED bridge stays FAILED; its worker is still cleaned up.
        """
        channel, engine = self._channel, self._engine
        self._channel = None
        self._engine = None
        if self._state is not ConnectionState.FAILED:
            self._state = ConnectionState.DISCONNECTED

        failed = 0
        if engine is not None:
            failed = engine.fail_all(
                BridgeError(DISCONNECTED, "Disconnected before the query completed"),
            )
        if channel is not None:
            await channel.terminate()
            self._logger.info("bridge_disconnected", failed_queries=failed)

    @asynccontextmanager
    async def session(self) -> AsyncIterator["SqlBridge"]:
        """Connect for the duration of an ``async with`` block."""
        await self.connect_async()
        try:
            yield self
        finally:
            await self.disconnect()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query(self, sql: str, callback: Optional[QueryCallback] = None) -> Optional[int]:
        """Submit a query; ``callback(error, result)`` fires once when done.

        When not connected the callback is called immediately with a
        NOT_CONNECTED error and nothing is sent.

        Returns:
            The message id, or None if nothing was sent.
        """
        callback = callback or _ignore_result
        if not self.is_connected():
            callback(BridgeError(NOT_CONNECTED, NOT_CONNECTED_MESSAGE), None)
            return None
        return self._engine.submit_callback(sql, callback)

    async def query_async(self, sql: str, *, timeout: Optional[float] = None) -> Any:
        """Submit a query and wait for its result.

        Args:
            sql: Query text, possibly several statements.
            timeout: Seconds to wait. On expiry the request is forgotten and
                a late response is dropped.

        Returns:
            A single result set, or a list of them for multi-statement SQL.

        Raises:
            BridgeError: NOT_CONNECTED, QUERY_FAILED, CHANNEL_FAULT,
                WORKER_EXITED, DISCONNECTED, CHANNEL_CLOSED or TIMEOUT.
        """
        if not self.is_connected():
            raise BridgeError(NOT_CONNECTED, NOT_CONNECTED_MESSAGE)

        engine, channel = self._engine, self._channel
        msg_id, future = engine.submit_future(sql)
        try:
            if not future.done():
                await channel.drain()
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            engine.abandon(msg_id)
            self._logger.warning("query_timeout", msg_id=msg_id, timeout=timeout)
            raise BridgeError(TIMEOUT, f"Query {msg_id} timed out after {timeout}s")
        except (asyncio.CancelledError, BridgeError):
            engine.abandon(msg_id)
            raise

    # ------------------------------------------------------------------
    # Channel events
    # ------------------------------------------------------------------

    def _on_channel_fault(
        self,
        channel: WorkerChannelProtocol,
        engine: CorrelationEngine,
        text: str,
    ) -> None:
        engine.dispatch_fault(text)
        if self._settings.fail_on_channel_fault and self._channel is channel:
            self._logger.warning("bridge_failed", reason="channel_fault")
            self._state = ConnectionState.FAILED
            self._spawn_background(channel.terminate())

    def _on_worker_exit(
        self,
        channel: WorkerChannelProtocol,
        engine: CorrelationEngine,
        returncode: Optional[int],
    ) -> None:
        if self._channel is not channel or self._state is not ConnectionState.CONNECTED:
            return
        self._state = ConnectionState.FAILED
        self._logger.warning("bridge_failed", reason="worker_exited", returncode=returncode)
        message = "Worker exited"
        if returncode is not None:
            message = f"{message} (exit code {returncode})"
        engine.fail_all(BridgeError(WORKER_EXITED, message))
        self._spawn_background(channel.terminate())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _connect_failed(self, channel: WorkerChannelProtocol) -> None:
        if self._channel is channel:
            self._state = ConnectionState.FAILED

    def _spawn_background(self, coro) -> "asyncio.Task[Any]":
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
