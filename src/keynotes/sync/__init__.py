# Sync Module - Remote account synchronization
#
# Moves only the whole encrypted vault blob. Undelivered writes wait in a
# durable offline queue; a push channel and a 5-minute poll keep devices
# in step under whole-vault newer-wins.

from .api_client import SyncApiClient, SyncConfig
from .coordinator import RemoteUpdate, SyncCoordinator, SyncResult
from .exceptions import (
    QueueExhausted,
    SyncAuthError,
    SyncError,
    SyncRequestError,
    SyncUnavailable,
)
from .offline_queue import OfflineQueue, OperationKind, QueuedOperation, QueueReport
from .realtime import RealtimeChannel, WebSocketChannel, websocket_url

__all__ = [
    "OfflineQueue",
    "OperationKind",
    "QueueExhausted",
    "QueueReport",
    "QueuedOperation",
    "RealtimeChannel",
    "RemoteUpdate",
    "SyncApiClient",
    "SyncAuthError",
    "SyncConfig",
    "SyncCoordinator",
    "SyncError",
    "SyncRequestError",
    "SyncResult",
    "SyncUnavailable",
    "WebSocketChannel",
    "websocket_url",
]
