"""Request/response correlation for one worker connection.

The engine owns the pending request table and the id counter. It never
touches the subprocess directly: outbound lines go through the ``send_line``
callable it was built with, inbound values arrive through ``dispatch`` and
``dispatch_fault``.

All methods must be called from the event loop thread. Submission inserts
into the table and dispatch removes from it; running both on one loop is
what keeps the table consistent without a lock.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from sql_bridge.ipc.protocol import (
    CHANNEL_CLOSED,
    QUERY_FAILED,
    BridgeError,
    ChannelFault,
    QueryRequest,
    QueryResponse,
    now_ms,
    unwrap_result,
)
from sql_bridge.logging import get_component_logger
from sql_bridge.protocols import LoggerProtocol

QueryCallback = Callable[[Optional[BridgeError], Any], Any]


class Completion:
    """Single-fire continuation for one request.

    Wraps either a ``callback(error, result)`` or an ``asyncio.Future``.
    Only the first resolve/fail has any effect.
    """

    __slots__ = ("_callback", "_future", "_fired")

    def __init__(
        self,
        callback: Optional[QueryCallback] = None,
        future: Optional[asyncio.Future] = None,
    ):
        if (callback is None) == (future is None):
            raise ValueError("Completion needs exactly one of callback or future")
        self._callback = callback
        self._future = future
        self._fired = False

    @classmethod
    def from_callback(cls, callback: QueryCallback) -> "Completion":
        return cls(callback=callback)

    @classmethod
    def from_future(cls, future: asyncio.Future) -> "Completion":
        return cls(future=future)

    @property
    def fired(self) -> bool:
        return self._fired

    def resolve(self, result: Any) -> bool:
        return self.fire(None, result)

    def fail(self, error: BridgeError) -> bool:
        return self.fire(error, None)

    def fire(self, error: Optional[BridgeError], result: Any = None) -> bool:
        """Deliver the outcome. Callbacks get both values; futures get one."""
        if self._fired:
            return False
        self._fired = True
        if self._callback is not None:
            self._callback(error, result)
            return True
        # The awaiting side may have given up (timeout/cancel)
        if self._future.done():
            return False
        if error is not None:
            self._future.set_exception(error)
        else:
            self._future.set_result(result)
        return True


@dataclass
class PendingRequest:
    """An in-flight query waiting for its response."""
    msg_id: int
    sql: str
    sent_time: int  # epoch ms
    started_ns: int  # perf_counter_ns
    completion: Completion


class CorrelationEngine:
    """Matches worker responses to the requests that produced them.

    Usage:
        engine = CorrelationEngine(channel.write_line)
        msg_id = engine.submit_callback("select 1", on_done)
        engine.dispatch({"msgId": msg_id, "result": [[{"x": 1}]]})
    """

    def __init__(
        self,
        send_line: Callable[[str], None],
        *,
        log_timing: bool = False,
        verbose: bool = False,
        logger: Optional[LoggerProtocol] = None,
    ):
        self._send_line = send_line
        self._log_timing = log_timing
        self._verbose = verbose
        self._logger = get_component_logger("correlation_engine", logger)
        self._pending: Dict[int, PendingRequest] = {}
        self._query_count = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def last_msg_id(self) -> int:
        return self._query_count

    def pending_ids(self) -> List[int]:
        return list(self._pending)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, sql: str, completion: Completion) -> int:
        """Send a query and register its completion.

        A failed write is reported through ``completion`` with
        CHANNEL_CLOSED, never raised.

        Returns:
            The message id assigned to this query.
        """
        if not isinstance(sql, str):
            raise TypeError(f"sql must be str, not {type(sql).__name__}")

        self._query_count += 1
        request = QueryRequest(msg_id=self._query_count, sql=sql, sent_time=now_ms())
        line = request.to_line()

        self._pending[request.msg_id] = PendingRequest(
            msg_id=request.msg_id,
            sql=sql,
            sent_time=request.sent_time,
            started_ns=time.perf_counter_ns(),
            completion=completion,
        )

        try:
            self._send_line(line)
        except BridgeError as e:
            self._pending.pop(request.msg_id, None)
            self._logger.warning("query_write_failed", msg_id=request.msg_id, error=e.message)
            self._complete(completion, e, None, request.msg_id)
        except OSError as e:
            self._pending.pop(request.msg_id, None)
            self._logger.warning("query_write_failed", msg_id=request.msg_id, error=str(e))
            self._complete(
                completion, BridgeError(CHANNEL_CLOSED, str(e)), None, request.msg_id,
            )
        else:
            if self._verbose:
                self._logger.info(
                    "query_sent", msg_id=request.msg_id, pending=len(self._pending), line=line,
                )
        return request.msg_id

    def submit_callback(self, sql: str, callback: QueryCallback) -> int:
        return self.submit(sql, Completion.from_callback(callback))

    def submit_future(self, sql: str) -> Tuple[int, asyncio.Future]:
        future = asyncio.get_running_loop().create_future()
        msg_id = self.submit(sql, Completion.from_future(future))
        return msg_id, future

    def abandon(self, msg_id: int) -> bool:
        """Forget a pending request without completing it.

        A response that arrives later for this id is dropped as unmatched.
        """
        return self._pending.pop(msg_id, None) is not None

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(self, value: Any) -> bool:
        """Route one decoded worker message to its pending request.

        Returns:
            True if a pending request was completed.
        """
        response = QueryResponse.parse(value)
        if response is None:
            self._logger.warning("worker_message_unrecognized", message=repr(value)[:200])
            return False

        # Remove before completing so a re-entrant submit sees a clean table
        request = self._pending.pop(response.msg_id, None)
        if request is None:
            self._logger.debug("worker_response_unmatched", msg_id=response.msg_id)
            return False

        result = unwrap_result(response.result)

        if self._log_timing:
            self._log_query_timing(request, response)
        if self._verbose:
            self._logger.info(
                "query_received", msg_id=response.msg_id, has_error=response.error is not None,
            )

        if response.error is not None:
            self._complete(
                request.completion, BridgeError(QUERY_FAILED, response.error), result,
                request.msg_id,
            )
        else:
            self._complete(request.completion, None, result, request.msg_id)
        return True

    def dispatch_fault(self, text: str) -> int:
        """Fail every pending request with a channel fault."""
        fault = ChannelFault(text)
        self._logger.warning("worker_channel_fault", error=text, pending=len(self._pending))
        return self.fail_all(fault.to_error())

    def fail_all(self, error: BridgeError) -> int:
        """Empty the table, then fail each collected request.

        Returns:
            Number of requests failed.
        """
        requests = list(self._pending.values())
        self._pending.clear()
        for request in requests:
            self._complete(request.completion, error, None, request.msg_id)
        return len(requests)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _complete(
        self,
        completion: Completion,
        error: Optional[BridgeError],
        result: Any,
        msg_id: int,
    ) -> None:
        try:
            completion.fire(error, result)
        except Exception:
            # A caller's callback must not take down dispatch for everyone else
            self._logger.exception("query_callback_failed", msg_id=msg_id)

    def _log_query_timing(self, request: PendingRequest, response: QueryResponse) -> None:
        elapsed_ms = (time.perf_counter_ns() - request.started_ns) / 1_000_000
        send_time_ms = None
        if response.java_end_time is not None:
            send_time_ms = now_ms() - response.java_end_time
        self._logger.info(
            "query_timing",
            msg_id=request.msg_id,
            elapsed_ms=round(elapsed_ms, 3),
            db_time_ms=response.db_time_ms,
            send_time_ms=send_time_ms,
            sql=request.sql,
        )
