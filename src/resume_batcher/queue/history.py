"""Fixed-capacity history of terminal items.

Replaces "delete the oldest key once the map grows past N" with a structure
whose bound and eviction order are part of its contract: at most
``capacity`` entries, and the entry inserted earliest is always the one
evicted.
"""

from collections import OrderedDict
from datetime import datetime
from typing import Callable, Iterator, List, Optional

from .models import QueueItem


class BoundedHistory:
    """Insertion-ordered map of item_id → QueueItem with a hard size cap."""

    def __init__(self, capacity: int, timestamp: Optional[Callable[[QueueItem], datetime]] = None):
        """Initialize history.

        Args:
            capacity: Maximum number of retained items (> 0)
            timestamp: Extracts the age reference of an item for purging
                       (default: processing_completed, falling back to updated_at)
        """
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.evicted = 0
        self._items: "OrderedDict[str, QueueItem]" = OrderedDict()
        self._timestamp = timestamp or (lambda item: item.processing_completed or item.updated_at)

    def add(self, item: QueueItem) -> Optional[QueueItem]:
        """Append an item, evicting the oldest one if the cap is exceeded.

        Returns:
            The evicted item, or None
        """
        self._items.pop(item.item_id, None)
        self._items[item.item_id] = item
        if len(self._items) > self.capacity:
            _, oldest = self._items.popitem(last=False)
            self.evicted += 1
            return oldest
        return None

    def get(self, item_id: str) -> Optional[QueueItem]:
        return self._items.get(item_id)

    def recent(self, n: int) -> List[QueueItem]:
        """Return the last ``n`` items, oldest first."""
        if n <= 0:
            return []
        return list(self._items.values())[-n:]

    def purge_older_than(self, cutoff: datetime) -> int:
        """Drop every item whose timestamp is before ``cutoff``.

        Returns:
            Count of removed items
        """
        stale = [item_id for item_id, item in self._items.items() if self._timestamp(item) < cutoff]
        for item_id in stale:
            del self._items[item_id]
        return len(stale)

    def clear(self) -> None:
        self._items.clear()

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[QueueItem]:
        return iter(list(self._items.values()))
