"""Wire protocol spoken with the database worker.

One JSON object per line in each direction.

Request (bridge -> worker stdin):
    {"msgId": 1, "sql": "select 1", "sentTime": 1633027200000}

Response (worker stdout -> bridge):
    {"msgId": 1, "result": [[{"col": 1}]], "javaStartTime": 1633027200001,
     "javaEndTime": 1633027200005, "error": "optional text"}

Before any response the worker prints the literal line ``connected``.
Worker stderr carries free-form error text; after the handshake any of it
is a channel fault.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

HANDSHAKE_TOKEN: str = "connected"

# Error codes
SPAWN_FAILED = "SPAWN_FAILED"
HANDSHAKE_FAILED = "HANDSHAKE_FAILED"
ALREADY_CONNECTED = "ALREADY_CONNECTED"
NOT_CONNECTED = "NOT_CONNECTED"
QUERY_FAILED = "QUERY_FAILED"
CHANNEL_FAULT = "CHANNEL_FAULT"
CHANNEL_CLOSED = "CHANNEL_CLOSED"
WORKER_EXITED = "WORKER_EXITED"
DISCONNECTED = "DISCONNECTED"
TIMEOUT = "TIMEOUT"

NOT_CONNECTED_MESSAGE = "Database isn't connected."


class BridgeError(Exception):
    """Any failure surfaced by the bridge, tagged with a code."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")


def now_ms() -> int:
    """Wall-clock time as integer epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class QueryRequest:
    """Outbound query envelope."""
    msg_id: int
    sql: str
    sent_time: int

    def to_dict(self) -> Dict[str, Any]:
        return {"msgId": self.msg_id, "sql": self.sql, "sentTime": self.sent_time}

    def to_line(self) -> str:
        """Serialize to a single line, without the trailing newline.

        json.dumps escapes control characters inside strings, so newlines
        in the SQL text end up as the two characters ``\\n``.
        """
        return json.dumps(self.to_dict())


def _as_int(value: Any) -> Optional[int]:
    # bool is an int subclass; true/false are not valid ids or times
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _as_time(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


@dataclass(frozen=True)
class QueryResponse:
    """Inbound result envelope.

    Built only through ``parse``; the worker is not trusted to send
    well-formed messages.
    """
    msg_id: int
    result: Any = None
    java_start_time: Optional[float] = None
    java_end_time: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def parse(cls, value: Any) -> Optional["QueryResponse"]:
        """Validate a decoded JSON value.

        Returns None when the value cannot be correlated (not an object, or
        no integer ``msgId``). Other missing fields get defaults.
        """
        if not isinstance(value, dict):
            return None
        msg_id = _as_int(value.get("msgId"))
        if msg_id is None:
            return None
        error = None
        if "error" in value:
            # Key presence fails the query, even when the value is null
            raw = value["error"]
            error = "null" if raw is None else str(raw)
        return cls(
            msg_id=msg_id,
            result=value.get("result"),
            java_start_time=_as_time(value.get("javaStartTime")),
            java_end_time=_as_time(value.get("javaEndTime")),
            error=error,
        )

    @property
    def db_time_ms(self) -> Optional[float]:
        """Processing time the worker reports for itself."""
        if self.java_start_time is None or self.java_end_time is None:
            return None
        return self.java_end_time - self.java_start_time


@dataclass(frozen=True)
class ChannelFault:
    """Text read from worker stderr after the handshake."""
    text: str

    def to_error(self) -> BridgeError:
        return BridgeError(CHANNEL_FAULT, self.text)


def unwrap_result(result: Any) -> Any:
    """Collapse a single result set to the bare element.

    Multi-statement results stay a list, in statement order.
    """
    if isinstance(result, list) and len(result) == 1:
        return result[0]
    return result


def is_handshake(line: str) -> bool:
    return line.strip() == HANDSHAKE_TOKEN
