from __future__ import annotations

"""Abstract base class for durable queue snapshot storage.

The work queue lives in memory; a SnapshotStore only holds periodic
crash-recovery images of it. The local implementation is SQLite, but any
backend that can store and return the newest snapshot will do.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import QueueSnapshot


class SnapshotStore(ABC):
    """Abstract snapshot storage interface.

    Implementations must provide:
    - Atomic writes (a crash mid-save leaves the previous snapshot readable)
    - Newest-first retrieval
    - Errors surfaced as PersistenceError
    """

    @abstractmethod
    def save_snapshot(self, snapshot: "QueueSnapshot") -> None:
        """Store a snapshot.

        Args:
            snapshot: Queue image to persist

        Implementation notes:
        - Must be a single transaction
        - May prune older snapshots
        - Raises PersistenceError on any storage failure
        """
        pass

    @abstractmethod
    def load_snapshot(self) -> Optional["QueueSnapshot"]:
        """Return the newest stored snapshot.

        Returns:
            QueueSnapshot or None if nothing was ever stored

        Implementation notes:
        - Raises PersistenceError if the stored data cannot be decoded
        """
        pass

    @abstractmethod
    def clear(self) -> None:
        """Delete every stored snapshot."""
        pass
