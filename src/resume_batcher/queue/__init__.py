"""Priority work queue and snapshot store for crash recovery."""

from .backends import SnapshotStore
from .hashing import compute_content_hash
from .history import BoundedHistory
from .models import (
    PRIORITY_ORDER,
    DocumentPayload,
    ItemStatus,
    Priority,
    QueueItem,
    QueueSnapshot,
    QueueStatistics,
    RetryEntry,
)
from .sqlite_backend import SQLiteSnapshotStore
from .work_queue import WorkQueue, coerce_priority

__all__ = [
    "SnapshotStore",
    "SQLiteSnapshotStore",
    "BoundedHistory",
    "compute_content_hash",
    "PRIORITY_ORDER",
    "DocumentPayload",
    "ItemStatus",
    "Priority",
    "QueueItem",
    "QueueSnapshot",
    "QueueStatistics",
    "RetryEntry",
    "WorkQueue",
    "coerce_priority",
]
