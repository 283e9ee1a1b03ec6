"""Client side of the sync protocol.

A :class:`SyncSession` keeps a local replica converged with the server by
combining the connection state machine, the merge engine and the REST
catch-up client on one serial execution context.
"""

from .api import CatchupResponse, RecordsClient, SnapshotResponse
from .connection import ConnectionInfo, ConnectionManager, ConnectionState, ReconnectPolicy
from .coordinator import MergeResult, SyncCoordinator
from .executor import SerialExecutor
from .session import SyncSession
from .transport import Transport, WebSocketTransport

__all__ = [
    "CatchupResponse",
    "ConnectionInfo",
    "ConnectionManager",
    "ConnectionState",
    "MergeResult",
    "RecordsClient",
    "ReconnectPolicy",
    "SerialExecutor",
    "SnapshotResponse",
    "SyncCoordinator",
    "SyncSession",
    "Transport",
    "WebSocketTransport",
]
