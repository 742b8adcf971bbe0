"""In-memory priority work queue with retry scheduling and crash snapshots.

This module provides the WorkQueue the background processor pulls from:
- Four priority tiers, FIFO within a tier
- Content-hash deduplication at enqueue time
- Bounded retry with a delay, failed items re-enter the front of their tier
- Bounded completed / failed history
- Periodic snapshots to a SnapshotStore for crash recovery

Every operation holds one re-entrant lock, so the queue can be shared by
producer threads, the processor thread and the maintenance thread.
"""

import heapq
import itertools
import logging
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from ..events import EventBus, QueueEvent
from ..exceptions import CapacityExceeded, ItemNotInFlight, PersistenceError, ValidationError
from ..models import QueueConfig
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

logger = logging.getLogger(__name__)

PayloadInput = Union[DocumentPayload, Dict[str, Any]]

# Detail views
COMPLETED_DETAIL_LIMIT = 50
FAILED_DETAIL_LIMIT = 20
ERROR_SNIPPET_LENGTH = 500


def coerce_priority(priority: Union[Priority, str]) -> Priority:
    """Map a priority name onto Priority, raising ValidationError if unknown."""
    if isinstance(priority, Priority):
        return priority
    try:
        return Priority(str(priority).lower())
    except ValueError:
        valid = ", ".join(p.value for p in PRIORITY_ORDER)
        raise ValidationError(f"Unknown priority '{priority}' (expected one of: {valid})")


class WorkQueue:
    """Priority work queue shared by producers and the background processor.

    Membership: every item lives in exactly one of a priority tier, the
    in-flight map (statuses processing and retrying), the completed history
    or the failed history.
    """

    def __init__(
        self,
        config: Optional[QueueConfig] = None,
        store: Optional[SnapshotStore] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = datetime.now,
        restore: bool = True,
    ):
        """Initialize queue.

        Args:
            config: Queue limits and intervals (defaults apply if None)
            store: Snapshot store; without one persist/restore are no-ops
            events: Event bus to publish item transitions on
            clock: Returns the current local time (injectable for tests)
            restore: Load the newest snapshot before accepting any work
        """
        self.config = config or QueueConfig()
        self.store = store
        self.events = events or EventBus()
        self.clock = clock

        self._lock = threading.RLock()
        self._tiers: Dict[Priority, Deque[QueueItem]] = {p: deque() for p in PRIORITY_ORDER}
        self._in_flight: Dict[str, QueueItem] = {}
        self._retry_heap: List[Tuple[datetime, int, str]] = []
        self._retry_seq = itertools.count()
        self._completed = BoundedHistory(self.config.completed_history_size)
        self._failed = BoundedHistory(self.config.failed_history_size)
        self._stats = QueueStatistics(last_reset=self.clock())
        self._maintenance: Optional[Tuple[threading.Thread, threading.Event]] = None

        if restore and self.store is not None:
            self.restore()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        payloads: Union[PayloadInput, Iterable[PayloadInput]],
        priority: Union[Priority, str] = Priority.NORMAL,
        context: str = "",
        source: str = "api",
    ) -> List[str]:
        """Add documents to the tail of a priority tier.

        Args:
            payloads: One payload or a list of payloads (DocumentPayload or dict)
            priority: Tier name
            context: Shared job context the documents are processed against
            source: Producer label

        Returns:
            Ids of the accepted items, in input order. Duplicates are skipped.

        Raises:
            ValidationError: A payload or the priority is malformed
            CapacityExceeded: The accepted items would not fit; nothing is added
        """
        tier = coerce_priority(priority)
        documents = self._validate_payloads(payloads)
        now = self.clock()

        with self._lock:
            known = self._known_hashes()
            accepted: List[QueueItem] = []
            for doc in documents:
                content_hash = compute_content_hash(doc)
                if content_hash in known:
                    logger.warning(
                        "Skipping duplicate document %s (hash %s)", doc.filename, content_hash[:12]
                    )
                    continue
                known.add(content_hash)
                accepted.append(
                    QueueItem(
                        item_id=uuid.uuid4().hex,
                        payload=doc,
                        priority=tier,
                        content_hash=content_hash,
                        context=context,
                        source=source,
                        created_at=now,
                        updated_at=now,
                        metadata={
                            "filename": doc.filename,
                            "size": doc.size,
                            "mime_type": doc.mime_type,
                        },
                    )
                )

            queued = self._queued_count()
            if queued + len(accepted) > self.config.max_queue_size:
                raise CapacityExceeded(self.config.max_queue_size, queued, len(accepted))

            self._tiers[tier].extend(accepted)
            self._stats.total_queued += len(accepted)

        ids = [item.item_id for item in accepted]
        if ids:
            logger.info("Queued %d item(s) with %s priority", len(ids), tier.value)
            self.events.queue.publish(QueueEvent("queued", ids, priority=tier.value))
        return ids

    def _validate_payloads(self, payloads: Any) -> List[DocumentPayload]:
        if isinstance(payloads, (DocumentPayload, dict)):
            payloads = [payloads]
        elif isinstance(payloads, (str, bytes)) or not isinstance(payloads, Iterable):
            raise ValidationError(f"Expected a document payload or a list of them, got {type(payloads).__name__}")

        documents = []
        for index, payload in enumerate(payloads):
            if isinstance(payload, DocumentPayload):
                documents.append(payload)
                continue
            if not isinstance(payload, dict):
                raise ValidationError(f"Payload {index} is a {type(payload).__name__}, expected an object")
            try:
                documents.append(DocumentPayload.model_validate(payload))
            except PydanticValidationError as e:
                raise ValidationError(f"Payload {index} is invalid: {e}") from e
        return documents

    def _known_hashes(self) -> set:
        hashes = {item.content_hash for tier in self._tiers.values() for item in tier}
        hashes.update(item.content_hash for item in self._in_flight.values())
        hashes.update(
            item.content_hash for item in self._completed.recent(self.config.dedup_recent_completed)
        )
        return hashes

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def dequeue(self, batch_size: int) -> List[QueueItem]:
        """Move up to ``batch_size`` items into the in-flight set.

        Due retries are released first. Tiers are drained in priority order,
        oldest first within a tier.
        """
        if batch_size <= 0:
            return []

        now = self.clock()
        with self._lock:
            released = self._release_due(now)
            taken: List[QueueItem] = []
            for priority in PRIORITY_ORDER:
                tier = self._tiers[priority]
                while tier and len(taken) < batch_size:
                    item = tier.popleft()
                    item.status = ItemStatus.PROCESSING
                    item.processing_started = now
                    item.updated_at = now
                    self._in_flight[item.item_id] = item
                    taken.append(item)
                if len(taken) >= batch_size:
                    break

        self._publish_requeued(released)
        if taken:
            logger.debug("Dequeued %d item(s)", len(taken))
            self.events.queue.publish(QueueEvent("dequeued", [i.item_id for i in taken]))
        return taken

    def mark_completed(self, item_id: str, result: Optional[Dict[str, Any]] = None) -> QueueItem:
        """Record a successful result and move the item to completed history.

        Raises:
            ItemNotInFlight: The item is not currently processing
        """
        now = self.clock()
        with self._lock:
            item = self._require_processing(item_id)
            del self._in_flight[item_id]
            item.status = ItemStatus.COMPLETED
            item.result = result
            self._finish(item, now)
            self._completed.add(item)

            self._stats.total_processed += 1
            self._stats.total_completed += 1
            n = self._stats.total_completed
            self._stats.average_processing_time_ms = (
                self._stats.average_processing_time_ms * (n - 1) + item.processing_time_ms
            ) / n

        logger.debug("Item %s completed in %.0f ms", item_id, item.processing_time_ms)
        self.events.queue.publish(QueueEvent("completed", [item_id], priority=item.priority.value))
        return item

    def mark_failed(self, item_id: str, error: Union[str, BaseException]) -> ItemStatus:
        """Record a failure, scheduling a retry or failing the item for good.

        Returns:
            ItemStatus.RETRYING or ItemStatus.FAILED

        Raises:
            ItemNotInFlight: The item is not currently processing
        """
        now = self.clock()
        message = str(error)[:ERROR_SNIPPET_LENGTH]
        with self._lock:
            item = self._require_processing(item_id)
            item.retry_count += 1
            item.last_error = message
            item.updated_at = now

            if item.retry_count < self.config.max_retries:
                item.status = ItemStatus.RETRYING
                due_at = now + timedelta(seconds=self.config.retry_delay_s)
                heapq.heappush(self._retry_heap, (due_at, next(self._retry_seq), item_id))
                self._stats.total_retried += 1
            else:
                del self._in_flight[item_id]
                item.status = ItemStatus.FAILED
                self._finish(item, now)
                self._failed.add(item)
                self._stats.total_processed += 1
                self._stats.total_failed += 1
            status = item.status

        if status == ItemStatus.RETRYING:
            logger.warning(
                "Item %s failed (attempt %d/%d), retrying in %.0fs: %s",
                item_id, item.retry_count, self.config.max_retries,
                self.config.retry_delay_s, message,
            )
            self.events.queue.publish(QueueEvent("retrying", [item_id], item.priority.value, message))
        else:
            logger.error("Item %s failed permanently after %d attempts: %s", item_id, item.retry_count, message)
            self.events.queue.publish(QueueEvent("failed", [item_id], item.priority.value, message))
        return status

    def release(self, item_ids: List[str]) -> int:
        """Return in-flight items to the front of their tiers without consuming a retry.

        Relative order of the released items is preserved.

        Raises:
            ItemNotInFlight: One of the items is not currently processing
        """
        with self._lock:
            items = [self._require_processing(item_id) for item_id in item_ids]
            self._requeue_front(items)

        if items:
            logger.info("Released %d item(s) back to their queues", len(items))
            self.events.queue.publish(QueueEvent("released", [i.item_id for i in items]))
        return len(items)

    def release_due_retries(self, now: Optional[datetime] = None) -> int:
        """Move every retry whose delay has elapsed back to the front of its tier.

        Returns:
            Count of re-queued items
        """
        with self._lock:
            released = self._release_due(now or self.clock())
        self._publish_requeued(released)
        return len(released)

    def _release_due(self, now: datetime) -> List[QueueItem]:
        due: List[QueueItem] = []
        while self._retry_heap and self._retry_heap[0][0] <= now:
            _, _, item_id = heapq.heappop(self._retry_heap)
            item = self._in_flight.get(item_id)
            if item is not None and item.status == ItemStatus.RETRYING:
                due.append(item)
        self._requeue_front(due)
        return due

    def _requeue_front(self, items: List[QueueItem]) -> None:
        now = self.clock()
        for item in reversed(items):
            self._in_flight.pop(item.item_id, None)
            item.status = ItemStatus.QUEUED
            item.processing_started = None
            item.updated_at = now
            self._tiers[item.priority].appendleft(item)

    def _publish_requeued(self, items: List[QueueItem]) -> None:
        if items:
            logger.info("Re-queued %d item(s) after retry delay", len(items))
            self.events.queue.publish(QueueEvent("requeued", [i.item_id for i in items]))

    def _require_processing(self, item_id: str) -> QueueItem:
        item = self._in_flight.get(item_id)
        if item is None or item.status != ItemStatus.PROCESSING:
            raise ItemNotInFlight(item_id)
        return item

    def _finish(self, item: QueueItem, now: datetime) -> None:
        item.processing_completed = now
        item.updated_at = now
        started = item.processing_started or now
        item.processing_time_ms = (now - started).total_seconds() * 1000

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def _queued_count(self) -> int:
        return sum(len(tier) for tier in self._tiers.values())

    def queued_count(self) -> int:
        with self._lock:
            return self._queued_count()

    def __len__(self) -> int:
        return self.queued_count()

    def get_item(self, item_id: str) -> Optional[QueueItem]:
        """Find an item wherever it currently lives."""
        with self._lock:
            if item_id in self._in_flight:
                return self._in_flight[item_id]
            for tier in self._tiers.values():
                for item in tier:
                    if item.item_id == item_id:
                        return item
            return self._completed.get(item_id) or self._failed.get(item_id)

    def throughput(self, now: Optional[datetime] = None) -> int:
        """Completions during the last hour."""
        cutoff = (now or self.clock()) - timedelta(hours=1)
        with self._lock:
            return sum(
                1 for item in self._completed
                if item.processing_completed and item.processing_completed >= cutoff
            )

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            in_flight = list(self._in_flight.values())
            return {
                "queues": {p.value: len(self._tiers[p]) for p in PRIORITY_ORDER},
                "total_queued": self._queued_count(),
                "processing": sum(1 for i in in_flight if i.status == ItemStatus.PROCESSING),
                "retrying": sum(1 for i in in_flight if i.status == ItemStatus.RETRYING),
                "completed": len(self._completed),
                "failed": len(self._failed),
                "statistics": self.get_statistics(),
                "last_updated": self.clock().isoformat(),
            }

    def get_queue_details(
        self,
        status: Optional[str] = None,
        priority: Optional[Union[Priority, str]] = None,
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Item summaries per section.

        Args:
            status: Only return this section (queued, processing, completed, failed)
            priority: Only list queued items of this tier

        Raises:
            ValidationError: Unknown status or priority
        """
        sections = ("queued", "processing", "completed", "failed")
        if status is not None and status not in sections:
            raise ValidationError(f"Unknown status '{status}' (expected one of: {', '.join(sections)})")
        tiers = [coerce_priority(priority)] if priority is not None else list(PRIORITY_ORDER)

        details: Dict[str, List[Dict[str, Any]]] = {}
        with self._lock:
            if status in (None, "queued"):
                details["queued"] = [item.summary() for p in tiers for item in self._tiers[p]]
            if status in (None, "processing"):
                details["processing"] = [item.summary() for item in self._in_flight.values()]
            if status in (None, "completed"):
                details["completed"] = [
                    item.summary() for item in self._completed.recent(COMPLETED_DETAIL_LIMIT)
                ]
            if status in (None, "failed"):
                details["failed"] = [
                    item.summary() for item in self._failed.recent(FAILED_DETAIL_LIMIT)
                ]
        return details

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            stats = self._stats.model_dump()
            stats["last_reset"] = self._stats.last_reset.isoformat()
            stats["queue_throughput"] = self.throughput()
            stats["history_evicted"] = self._completed.evicted + self._failed.evicted
            return stats

    def reset_statistics(self) -> None:
        with self._lock:
            self._stats = QueueStatistics(last_reset=self.clock())
        logger.info("Queue statistics reset")

    # ------------------------------------------------------------------
    # Persistence and housekeeping
    # ------------------------------------------------------------------

    def snapshot(self) -> QueueSnapshot:
        """Crash-recovery image. Items currently processing are not captured."""
        with self._lock:
            retry_pending = []
            for due_at, _, item_id in sorted(self._retry_heap):
                item = self._in_flight.get(item_id)
                if item is not None and item.status == ItemStatus.RETRYING:
                    retry_pending.append(RetryEntry(due_at=due_at, item=item.model_copy(deep=True)))
            return QueueSnapshot(
                tiers={
                    p: [item.model_copy(deep=True) for item in self._tiers[p]]
                    for p in PRIORITY_ORDER
                },
                retry_pending=retry_pending,
                statistics=self._stats.model_copy(),
                saved_at=self.clock(),
            )

    def persist(self) -> bool:
        """Write a snapshot to the store.

        Returns:
            True on success. Store failures are logged and reported as False.
        """
        if self.store is None:
            return False
        snapshot = self.snapshot()
        try:
            self.store.save_snapshot(snapshot)
        except PersistenceError as e:
            logger.error("Failed to persist queue snapshot: %s", e)
            return False
        logger.debug(
            "Persisted snapshot with %d queued and %d retrying item(s)",
            sum(len(items) for items in snapshot.tiers.values()),
            len(snapshot.retry_pending),
        )
        return True

    def restore(self) -> bool:
        """Replace queue contents with the newest stored snapshot.

        Returns:
            True if a snapshot was loaded. An unreadable snapshot is logged
            and the queue starts empty.
        """
        if self.store is None:
            return False
        try:
            snapshot = self.store.load_snapshot()
        except PersistenceError as e:
            logger.error("Could not restore queue snapshot, starting empty: %s", e)
            return False
        if snapshot is None:
            return False

        with self._lock:
            self.load_snapshot(snapshot)
        logger.info(
            "Restored %d queued item(s) from snapshot saved at %s",
            self.queued_count(), snapshot.saved_at.isoformat(),
        )
        return True

    def load_snapshot(self, snapshot: QueueSnapshot) -> None:
        """Install a snapshot. Pending retries go to the front of their tier."""
        with self._lock:
            self._tiers = {p: deque() for p in PRIORITY_ORDER}
            self._in_flight.clear()
            self._retry_heap.clear()
            for priority in PRIORITY_ORDER:
                for item in snapshot.tiers.get(priority, []):
                    item.status = ItemStatus.QUEUED
                    item.processing_started = None
                    self._tiers[priority].append(item)

            pending = sorted(snapshot.retry_pending, key=lambda entry: entry.due_at)
            for entry in reversed(pending):
                item = entry.item
                item.status = ItemStatus.QUEUED
                item.processing_started = None
                self._tiers[item.priority].appendleft(item)

            self._stats = snapshot.statistics.model_copy()

    def purge_history(self, max_age_s: Optional[float] = None) -> int:
        """Drop completed and failed history older than ``max_age_s``.

        Returns:
            Count of removed items
        """
        age = self.config.history_max_age_s if max_age_s is None else max_age_s
        cutoff = self.clock() - timedelta(seconds=age)
        with self._lock:
            removed = self._completed.purge_older_than(cutoff) + self._failed.purge_older_than(cutoff)
        if removed:
            logger.info("Purged %d history item(s) older than %.0fs", removed, age)
        return removed

    def start(self) -> None:
        """Start the maintenance thread (snapshots and history purge). Idempotent."""
        with self._lock:
            if self._maintenance is not None:
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._maintenance_loop,
                args=(stop_event,),
                name="work-queue-maintenance",
                daemon=True,
            )
            self._maintenance = (thread, stop_event)
        thread.start()
        logger.debug("Queue maintenance thread started")

    def _maintenance_loop(self, stop_event: threading.Event) -> None:
        last_cleanup = time.monotonic()
        while not stop_event.wait(self.config.persist_interval_s):
            self.persist()
            if time.monotonic() - last_cleanup >= self.config.cleanup_interval_s:
                self.purge_history()
                last_cleanup = time.monotonic()

    def shutdown(self) -> bool:
        """Stop the maintenance thread and write a final snapshot.

        Returns:
            Result of the final persist()
        """
        with self._lock:
            maintenance, self._maintenance = self._maintenance, None
        if maintenance is not None:
            thread, stop_event = maintenance
            stop_event.set()
            thread.join(timeout=5)
        persisted = self.persist()
        logger.info("Work queue shut down (snapshot %s)", "saved" if persisted else "not saved")
        return persisted

    def clear(self) -> None:
        """Drop every queued, in-flight and historical item."""
        with self._lock:
            self._tiers = {p: deque() for p in PRIORITY_ORDER}
            self._in_flight.clear()
            self._retry_heap.clear()
            self._completed.clear()
            self._failed.clear()
