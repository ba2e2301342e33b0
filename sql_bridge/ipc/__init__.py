"""Worker IPC: line-JSON wire protocol and the subprocess channel."""

from sql_bridge.ipc.channel import WorkerChannel
from sql_bridge.ipc.protocol import (
    BridgeError,
    ChannelFault,
    QueryRequest,
    QueryResponse,
    unwrap_result,
)

__all__ = [
    "WorkerChannel",
    "BridgeError",
    "ChannelFault",
    "QueryRequest",
    "QueryResponse",
    "unwrap_result",
]
