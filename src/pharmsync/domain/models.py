from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class QueueStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


class ConflictOutcome(str, Enum):
    INSERTED = "inserted"
    REPLACED = "replaced"
    # local copy kept: same age or newer than the remote one
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SyncQueueEntry:
    id: int
    table_name: str
    record_id: str
    operation: str
    data: dict[str, Any]
    status: str
    retry_count: int
    timestamp: str
    last_error: Optional[str] = None


@dataclass(frozen=True)
class SyncStatus:
    is_online: bool
    is_syncing: bool
    is_initialized: bool


@dataclass
class SyncResult:
    synced: int = 0
    failed: int = 0
    deferred: int = 0
    pulled: int = 0
    skipped: bool = False
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ForceSyncResult:
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class InventoryAlert:
    id: str
    type: str
    product_id: str
    product_name: str
    message: str
    severity: str
    timestamp: str
    action_required: bool
