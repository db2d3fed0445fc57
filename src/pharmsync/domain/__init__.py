from .models import (
    ConflictOutcome,
    ForceSyncResult,
    InventoryAlert,
    QueueStatus,
    SyncQueueEntry,
    SyncResult,
    SyncStatus,
)
from .errors import (
    AppError,
    InsufficientStockError,
    LocalStoreUnavailable,
    NotFoundError,
    OfflineError,
    RemoteError,
    RemoteRejected,
    RemoteUnavailable,
    ValidationError,
)

__all__ = [
    "ConflictOutcome",
    "ForceSyncResult",
    "InventoryAlert",
    "QueueStatus",
    "SyncQueueEntry",
    "SyncResult",
    "SyncStatus",
    "AppError",
    "InsufficientStockError",
    "LocalStoreUnavailable",
    "NotFoundError",
    "OfflineError",
    "RemoteError",
    "RemoteRejected",
    "RemoteUnavailable",
    "ValidationError",
]
