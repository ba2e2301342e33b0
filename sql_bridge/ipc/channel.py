"""Worker process channel.

Owns the worker subprocess and its three standard streams:

- stdin: one JSON request per line (write_line)
- stdout: the handshake line, then one JSON response per line
- stderr: handshake failure text, then channel faults

The channel knows nothing about requests or ids. It hands decoded JSON
values and stderr text to whoever called start().
"""

from __future__ import annotations

import asyncio
import json
from typing import List, Optional, Sequence, Set

from sql_bridge.ipc.protocol import (
    CHANNEL_CLOSED,
    HANDSHAKE_FAILED,
    SPAWN_FAILED,
    BridgeError,
)
from sql_bridge.logging import get_component_logger
from sql_bridge.protocols import (
    ExitHandler,
    FaultHandler,
    LoggerProtocol,
    MessageHandler,
)
from sql_bridge.settings import MAX_LINE_SIZE

STDERR_CHUNK_SIZE: int = 64 * 1024


class WorkerChannel:
    """Async wrapper around the worker subprocess.

    Usage:
        channel = WorkerChannel(["java", "-jar", "bridge.jar", ...])
        await channel.spawn()
        line = await channel.handshake()
        channel.start(on_message, on_fault, on_exit)
        channel.write_line('{"msgId": 1, ...}')
        await channel.terminate()
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        encoding: str = "utf-8",
        line_limit: int = MAX_LINE_SIZE,
        terminate_timeout: float = 5.0,
        logger: Optional[LoggerProtocol] = None,
    ):
        if not command:
            raise ValueError("worker command must not be empty")
        self._command = list(command)
        self._encoding = encoding
        self._line_limit = line_limit
        self._terminate_timeout = terminate_timeout
        self._logger = get_component_logger("worker_channel", logger)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._handshake_tasks: Set[asyncio.Future] = set()
        self._reader_tasks: List[asyncio.Task] = []
        self._on_exit: Optional[ExitHandler] = None
        self._terminating = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def running(self) -> bool:
        return (
            self._process is not None
            and self._process.returncode is None
            and not self._terminating
        )

    @property
    def listening(self) -> bool:
        """True while any handshake or reader task is still attached."""
        tasks = [*self._handshake_tasks, *self._reader_tasks]
        return any(not t.done() for t in tasks)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def spawn(self) -> None:
        """Start the worker process.

        Raises:
            BridgeError: SPAWN_FAILED if the executable cannot be started.
        """
        if self._process is not None:
            raise BridgeError(SPAWN_FAILED, "Worker already spawned")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self._line_limit,
            )
        except (OSError, ValueError) as e:
            # ValueError: NUL byte in an argument.
            # argv[0] only: the remaining arguments carry credentials
            self._logger.error("worker_spawn_failed", executable=self._command[0], error=str(e))
            raise BridgeError(
                SPAWN_FAILED, f"Could not start worker {self._command[0]!r}: {e}"
            ) from e
        self._logger.info("worker_spawned", executable=self._command[0], pid=self._process.pid)

    async def handshake(self) -> str:
        """Wait for the worker's first word.

        Races the first stdout line against the first stderr chunk. Whichever
        arrives first decides; the other read is cancelled.

        Returns:
            The first stdout line, decoded and stripped.

        Raises:
            BridgeError: HANDSHAKE_FAILED if stderr spoke first, stdout
                closed, or the line exceeded the size limit. The worker is
                terminated in each case.
        """
        process = self._require_process()
        out_task = asyncio.ensure_future(process.stdout.readline())
        err_task = asyncio.ensure_future(process.stderr.read(STDERR_CHUNK_SIZE))
        self._handshake_tasks = {out_task, err_task}

        failure: Optional[str] = None
        exited = False
        raw = b""
        try:
            done, _ = await asyncio.wait(
                self._handshake_tasks, return_when=asyncio.FIRST_COMPLETED,
            )
            if self._terminating:
                raise BridgeError(HANDSHAKE_FAILED, "Worker terminated during handshake")
            err_data = err_task.result() if err_task in done else b""
            if err_data:
                failure = self._decode(err_data).strip() or "Worker wrote to stderr"
            else:
                # stderr closed quietly or stdout won; either way stdout decides
                try:
                    raw = await out_task
                except ValueError:
                    failure = f"Handshake line exceeds {self._line_limit} bytes"
                except asyncio.CancelledError:
                    if not self._terminating:
                        raise
                    raise BridgeError(HANDSHAKE_FAILED, "Worker terminated during handshake")
                else:
                    if not raw:
                        exited = True
                        failure = "Worker exited before handshake"
        finally:
            await self._detach_handshake()

        if failure is not None:
            self._logger.warning("worker_handshake_failed", error=failure)
            await self.terminate()
            if exited:
                failure = f"{failure} (exit code {self.returncode})"
            raise BridgeError(HANDSHAKE_FAILED, failure)

        return self._decode(raw).strip()

    def start(
        self,
        on_message: MessageHandler,
        on_fault: FaultHandler,
        on_exit: Optional[ExitHandler] = None,
    ) -> None:
        """Begin post-handshake reading of stdout and stderr."""
        process = self._require_process()
        if self._reader_tasks:
            raise RuntimeError("Worker channel already started")
        self._on_exit = on_exit
        self._reader_tasks = [
            asyncio.create_task(self._read_stdout(process.stdout, on_message)),
            asyncio.create_task(self._read_stderr(process.stderr, on_fault)),
        ]

    def write_line(self, line: str) -> None:
        """Write one line to worker stdin. Does not wait for the pipe.

        Raises:
            BridgeError: CHANNEL_CLOSED if the worker can no longer be written to.
        """
        process = self._process
        if (
            not self.running
            or process.stdin is None
            or process.stdin.is_closing()
        ):
            raise BridgeError(CHANNEL_CLOSED, "Worker input is closed")
        process.stdin.write((line + "\n").encode("utf-8"))

    async def drain(self) -> None:
        """Wait until buffered stdin data has been handed to the OS."""
        process = self._require_process()
        if process.stdin is None:
            return
        try:
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise BridgeError(CHANNEL_CLOSED, f"Worker input is closed: {e}") from e

    async def terminate(self) -> None:
        """Stop reading and end the worker process. Idempotent."""
        if self._terminating:
            return
        self._terminating = True

        await self._detach_handshake()
        current = asyncio.current_task()
        readers = [t for t in self._reader_tasks if t is not current]
        for task in readers:
            if not task.done():
                task.cancel()
        await asyncio.gather(*readers, return_exceptions=True)

        process = self._process
        if process is None:
            return
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self._terminate_timeout)
            except asyncio.TimeoutError:
                self._logger.warning("worker_kill", pid=process.pid)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
        self._logger.info("worker_terminated", pid=process.pid, returncode=process.returncode)

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    async def _read_stdout(
        self, stream: asyncio.StreamReader, on_message: MessageHandler,
    ) -> None:
        """Line decoder: one JSON value per stdout line."""
        try:
            while True:
                try:
                    raw = await stream.readline()
                except ValueError:
                    self._logger.error("worker_line_too_large", limit=self._line_limit)
                    break
                if not raw:
                    break
                text = self._decode(raw).strip()
                if not text:
                    continue
                try:
                    value = json.loads(text)
                except json.JSONDecodeError:
                    self._logger.warning("worker_output_not_json", line=text[:200])
                    continue
                on_message(value)
        except asyncio.CancelledError:
            return
        except Exception as e:
            self._logger.error("worker_read_error", error=str(e))
        finally:
            if not self._terminating:
                self._notify_exit()

    async def _read_stderr(
        self, stream: asyncio.StreamReader, on_fault: FaultHandler,
    ) -> None:
        try:
            while True:
                data = await stream.read(STDERR_CHUNK_SIZE)
                if not data:
                    break
                text = self._decode(data).strip()
                if text:
                    on_fault(text)
        except asyncio.CancelledError:
            return
        except Exception as e:
            self._logger.error("worker_stderr_read_error", error=str(e))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _notify_exit(self) -> None:
        returncode = self.returncode
        self._logger.warning("worker_output_closed", pid=self.pid, returncode=returncode)
        if self._on_exit is not None:
            self._on_exit(returncode)

    async def _detach_handshake(self) -> None:
        tasks = self._handshake_tasks
        self._handshake_tasks = set()
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _require_process(self) -> asyncio.subprocess.Process:
        if self._process is None:
            raise BridgeError(CHANNEL_CLOSED, "Worker not spawned")
        return self._process

    def _decode(self, data: bytes) -> str:
        return data.decode(self._encoding, errors="replace")
