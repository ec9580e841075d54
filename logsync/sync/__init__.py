"""Delta-based log synchronization."""

from .client import LogEndpointClient
from .delta import calculate_delta
from .task import LogSyncTask, Mode, SyncResult, SyncState, SyncStatus

__all__ = [
    "calculate_delta",
    "LogEndpointClient",
    "LogSyncTask",
    "Mode",
    "SyncResult",
    "SyncState",
    "SyncStatus",
]
