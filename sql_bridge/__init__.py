"""SQL bridge to a line-JSON database worker process.

The host never talks to the database. It starts a long-lived worker (by
default the JavaSybaseLink jar), waits for the worker to print
``connected``, then exchanges one JSON object per line over the worker's
stdin/stdout. Responses may come back in any order; each carries the id of
the request it answers.

Sub-packages:
- ipc/       - wire protocol records and the subprocess channel
- logging/   - structlog configuration and injectable loggers

Top-level modules:
- client     - SqlBridge: connection lifecycle and host-facing API
- engine     - CorrelationEngine: pending request table and dispatch
- settings   - BridgeSettings (pydantic-settings, SQL_BRIDGE_* env vars)
- protocols  - ConnectionState, LoggerProtocol, WorkerChannelProtocol
- cli        - ``sql-bridge`` diagnostic command

Usage:
    from sql_bridge import SqlBridge

    async with SqlBridge.open(host="db1", port=5000, database="prod",
                              username="sa", password="secret") as bridge:
        result = await bridge.query_async("select 1 as one")
"""

from sql_bridge.client import SqlBridge
from sql_bridge.engine import Completion, CorrelationEngine, PendingRequest
from sql_bridge.ipc.protocol import BridgeError
from sql_bridge.protocols import ConnectionState
from sql_bridge.settings import BridgeSettings

__version__ = "1.0.0"

__all__ = [
    "SqlBridge",
    "BridgeSettings",
    "BridgeError",
    "ConnectionState",
    "CorrelationEngine",
    "Completion",
    "PendingRequest",
]
