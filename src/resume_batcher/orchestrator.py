"""Background processor: the single-flight loop that drives the pipeline.

Each tick pulls a slice of the work queue, resolves document text, packs it
into token-budget batches and dispatches them one call at a time through the
rate limiter. Results are reconciled back into queue transitions; nothing
raised during dispatch escapes the loop.

Threads:
- processor loop: tick() every ``processing_interval_s``
- health monitor: run_health_check() every ``check_interval_s``
- queue maintenance: owned by the WorkQueue (snapshots, history purge)
"""

import logging
import threading
import time
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .collaborators import GenerationClient, RateLimiter, ResponseParser, TextExtractor, TextOptimizer
from .events import BatchEvent, EventBus, HealthEvent, ProcessorEvent
from .exceptions import BatchDispatchError, ProcessingError, RateLimitExceeded
from .models import HealthConfig, ProcessorConfig
from .parsing import split_batch_response
from .prompts import build_batch_prompt
from .queue.models import ItemStatus, QueueItem
from .queue.work_queue import WorkQueue
from .scheduler import Batch, BatchEntry, BatchScheduler

logger = logging.getLogger(__name__)


class ProcessorState(str, Enum):
    """Where the processor loop currently is."""

    IDLE = "idle"
    POLLING = "polling"
    DISPATCHING = "dispatching"
    AWAITING_RESPONSE = "awaiting_response"
    RECONCILING = "reconciling"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"


class HealthStatus(str, Enum):
    """Tri-state health signal."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class BackgroundProcessor:
    """Single-flight dispatcher between the work queue and the generation service."""

    def __init__(
        self,
        queue: WorkQueue,
        scheduler: BatchScheduler,
        client: GenerationClient,
        rate_limiter: RateLimiter,
        parser: ResponseParser,
        extractor: Optional[TextExtractor] = None,
        optimizer: Optional[TextOptimizer] = None,
        config: Optional[ProcessorConfig] = None,
        health_config: Optional[HealthConfig] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.queue = queue
        self.scheduler = scheduler
        self.client = client
        self.rate_limiter = rate_limiter
        self.parser = parser
        self.extractor = extractor
        self.optimizer = optimizer
        self.config = config or ProcessorConfig()
        self.health_config = health_config or HealthConfig()
        self.events = events or queue.events
        self.clock = clock

        self._state = ProcessorState.IDLE
        self._state_lock = threading.Lock()
        self._dispatch_lock = threading.Lock()
        self._running = False
        self._paused = False
        self._started_at: Optional[datetime] = None
        self._current_batch: Optional[Dict[str, Any]] = None
        self._backoff_until: Optional[datetime] = None
        self._health = HealthStatus.HEALTHY
        self._health_issues: List[str] = []
        self._threads: List[Tuple[threading.Thread, threading.Event]] = []

        self.stats: Dict[str, Any] = {
            "batches_processed": 0,
            "batches_failed": 0,
            "items_processed": 0,
            "items_failed": 0,
            "average_batch_time_ms": 0.0,
            "last_processed_at": None,
            "rate_limit_aborts": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProcessorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    def _set_state(self, state: ProcessorState) -> None:
        with self._state_lock:
            self._state = state

    def _resting_state(self) -> ProcessorState:
        if not self._running:
            return ProcessorState.STOPPING if self._state == ProcessorState.STOPPING else ProcessorState.IDLE
        return ProcessorState.PAUSED if self._paused else ProcessorState.IDLE

    def start(self) -> None:
        """Start the processor, health and queue maintenance threads. Idempotent."""
        with self._state_lock:
            if self._running:
                logger.info("Background processor is already running")
                return
            self._running = True
            self._paused = False
            self._started_at = self.clock()
            self._state = ProcessorState.IDLE

        self.queue.start()
        self._threads = [
            self._spawn("processor-loop", self.config.processing_interval_s, self.tick),
            self._spawn("health-monitor", self.health_config.check_interval_s, self.run_health_check),
        ]
        logger.info("Background processor started")
        self.events.processor.publish(ProcessorEvent("started", self._state.value))

    def _spawn(self, name: str, interval: float, target: Callable[[], Any]) -> Tuple[threading.Thread, threading.Event]:
        stop_event = threading.Event()

        def loop():
            while not stop_event.wait(interval):
                try:
                    target()
                except Exception:
                    # Keep the loop alive
                    logger.exception("Unexpected error in %s", name)

        thread = threading.Thread(target=loop, name=name, daemon=True)
        thread.start()
        return (thread, stop_event)

    def pause(self) -> None:
        if not self._running:
            return
        with self._state_lock:
            self._paused = True
            if self._current_batch is None:
                self._state = ProcessorState.PAUSED
        logger.info("Background processor paused")
        self.events.processor.publish(ProcessorEvent("paused", self._state.value))

    def resume(self) -> None:
        if not self._running or not self._paused:
            return
        with self._state_lock:
            self._paused = False
            if self._current_batch is None:
                self._state = ProcessorState.IDLE
        logger.info("Background processor resumed")
        self.events.processor.publish(ProcessorEvent("resumed", self._state.value))

    def stop(self) -> None:
        """Stop ticking, wait for the in-flight batch, then shut the queue down."""
        with self._state_lock:
            if not self._running:
                return
            self._running = False
            self._state = ProcessorState.STOPPING

        for _, stop_event in self._threads:
            stop_event.set()

        if self._dispatch_lock.locked():
            logger.info("Waiting for current batch to complete...")
        while self._dispatch_lock.locked():
            time.sleep(self.config.stop_poll_interval_s)

        for thread, _ in self._threads:
            thread.join(timeout=5)
        self._threads = []

        self.queue.shutdown()
        self._set_state(ProcessorState.STOPPED)
        uptime = self.uptime_s()
        logger.info("Background processor stopped after %.0fs", uptime)
        self.events.processor.publish(ProcessorEvent("stopped", self._state.value))

    def uptime_s(self) -> float:
        if self._started_at is None:
            return 0.0
        return (self.clock() - self._started_at).total_seconds()

    def is_business_hours(self, now: Optional[datetime] = None) -> bool:
        """Local-clock window check. No timezone conversion is applied."""
        return self.config.business_hours.contains((now or self.clock()).hour)

    # ------------------------------------------------------------------
    # Producer entry point
    # ------------------------------------------------------------------

    def queue_documents(
        self,
        payloads,
        priority: str = "normal",
        context: str = "",
        source: str = "api",
    ) -> List[str]:
        """Enqueue documents. Raises only CapacityExceeded or ValidationError."""
        return self.queue.enqueue(payloads, priority=priority, context=context, source=source)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def tick(self) -> int:
        """Run one loop iteration.

        Returns:
            Number of items pulled from the queue (0 when skipped or idle)
        """
        if not self._running or self._paused:
            return 0

        now = self.clock()
        if self._backoff_until is not None:
            if now < self._backoff_until:
                return 0
            self._backoff_until = None
        if self.config.enable_scheduling and not self.is_business_hours(now):
            return 0

        self.queue.release_due_retries(now)
        return self._dispatch_slice(require_running=True)

    def process_next_batch(self) -> int:
        """Dequeue, batch, dispatch and reconcile one slice of the queue.

        Returns immediately with 0 when another dispatch is in flight.
        """
        return self._dispatch_slice(require_running=False)

    def _dispatch_slice(self, require_running: bool) -> int:
        if not self._dispatch_lock.acquire(blocking=False):
            return 0
        if require_running and not self._running:
            # stop() began after the tick passed its running check
            self._dispatch_lock.release()
            return 0
        try:
            self._set_state(ProcessorState.POLLING)
            items = self.queue.dequeue(self.config.dequeue_size)
            if not items:
                return 0

            self._current_batch = {
                "id": f"run_{uuid.uuid4().hex[:12]}",
                "item_count": len(items),
                "started_at": self.clock().isoformat(),
            }
            logger.info("Starting batch processing: %d document(s)", len(items))
            try:
                self._process_items(items)
            except Exception as e:
                logger.exception("Batch processing failed unexpectedly")
                self._fail_stranded(items, e)
            return len(items)
        finally:
            self._current_batch = None
            self._dispatch_lock.release()
            self._set_state(self._resting_state())

    def _process_items(self, items: List[QueueItem]) -> None:
        by_id = {item.item_id: item for item in items}
        groups = self._prepare_entries(items)

        batches: List[Batch] = []
        for context, entries in groups.items():
            batches.extend(self.scheduler.create_batches(entries, shared_context=context))

        for index, batch in enumerate(batches):
            if batch.oversized:
                error = ProcessingError(
                    f"Document needs {batch.total_tokens} tokens, over the {batch.max_tokens} per-call ceiling"
                )
                self._fail_batch(batch, error, duration_ms=0.0)
                continue

            for item_id in batch.item_ids:
                by_id[item_id].batch_ref = batch.batch_id

            try:
                self._dispatch(batch)
            except RateLimitExceeded as e:
                pending = [item_id for later in batches[index:] for item_id in later.item_ids]
                self._abort_for_rate_limit(batch, pending, e)
                return

    def _fail_stranded(self, items: List[QueueItem], error: Exception) -> None:
        """Fail every item of the slice that is still marked processing."""
        for item in items:
            if item.status == ItemStatus.PROCESSING:
                self.queue.mark_failed(item.item_id, error)

    def _prepare_entries(self, items: List[QueueItem]) -> "OrderedDict[str, List[BatchEntry]]":
        """Resolve text for every item and group the entries by shared context."""
        groups: "OrderedDict[str, List[BatchEntry]]" = OrderedDict()
        for item in items:
            try:
                text = self._resolve_text(item)
            except ProcessingError as e:
                logger.warning("Could not extract text for %s: %s", item.item_id, e)
                self.queue.mark_failed(item.item_id, e)
                self.stats["items_failed"] += 1
                continue

            if self.optimizer is not None:
                try:
                    optimized = self.optimizer.optimize(text)
                    logger.debug(
                        "Optimized %s: %d -> %d words (%.1f%% reduction)",
                        item.item_id, optimized.original_word_count,
                        optimized.final_word_count, optimized.reduction_percentage,
                    )
                    text = optimized.optimized_text
                except ProcessingError as e:
                    logger.warning("Optimization failed for %s, using original text: %s", item.item_id, e)

            groups.setdefault(item.context, []).append(
                BatchEntry(item_id=item.item_id, text=text)
            )
        return groups

    def _resolve_text(self, item: QueueItem) -> str:
        payload = item.payload
        if payload.text:
            return payload.text
        if payload.content:
            if self.extractor is None:
                raise ProcessingError(f"No text extractor configured for {payload.filename}")
            return self.extractor.extract(payload.content, payload.filename, payload.mime_type).text
        raise ProcessingError("No text or file data available")

    def _dispatch(self, batch: Batch) -> None:
        started = time.monotonic()
        self._set_state(ProcessorState.DISPATCHING)
        self.rate_limiter.await_permit()

        logger.info(
            "Dispatching %s: %d document(s), ~%d tokens (%.1f%% of ceiling)",
            batch.batch_id, batch.size, batch.total_tokens, batch.token_utilization,
        )
        self.events.batch.publish(
            BatchEvent("started", batch.batch_id, batch.item_ids, batch.total_tokens)
        )
        prompt = build_batch_prompt(batch.entries, batch.context)

        self._set_state(ProcessorState.AWAITING_RESPONSE)
        try:
            raw = self.client.generate(prompt)
        except RateLimitExceeded:
            raise
        except ProcessingError as e:
            self._fail_batch(batch, e, self._elapsed_ms(started))
            return
        except Exception as e:
            logger.exception("Generation call for %s failed", batch.batch_id)
            self._fail_batch(batch, BatchDispatchError(str(e)), self._elapsed_ms(started))
            return

        self._set_state(ProcessorState.RECONCILING)
        try:
            records = split_batch_response(raw, batch.size)
            results = [self.parser.parse_response(record, batch.context) for record in records]
        except ProcessingError as e:
            self._fail_batch(batch, e, self._elapsed_ms(started))
            return

        for entry, result in zip(batch.entries, results):
            self.queue.mark_completed(entry.item_id, result)

        duration_ms = self._elapsed_ms(started)
        self._record_batch(batch.size, duration_ms)
        logger.info("Batch %s completed in %.0fms: %d document(s)", batch.batch_id, duration_ms, batch.size)
        self.events.batch.publish(
            BatchEvent("completed", batch.batch_id, batch.item_ids, batch.total_tokens, duration_ms)
        )

    def _elapsed_ms(self, started: float) -> float:
        return (time.monotonic() - started) * 1000

    def _fail_batch(self, batch: Batch, error: Exception, duration_ms: float) -> None:
        logger.error("Batch %s failed (%d document(s)): %s", batch.batch_id, batch.size, error)
        for item_id in batch.item_ids:
            self.queue.mark_failed(item_id, error)
        self.stats["batches_failed"] += 1
        self.stats["items_failed"] += batch.size
        self.events.batch.publish(
            BatchEvent("failed", batch.batch_id, batch.item_ids, batch.total_tokens, duration_ms, str(error))
        )

    def _abort_for_rate_limit(self, batch: Batch, pending: List[str], error: RateLimitExceeded) -> None:
        backoff = max(self.config.rate_limit_backoff_s, error.retry_after_s)
        self._backoff_until = self.clock() + timedelta(seconds=backoff)
        self.queue.release(pending)
        self.stats["rate_limit_aborts"] += 1
        logger.warning(
            "Rate limit reached before %s, released %d document(s), backing off %.0fs: %s",
            batch.batch_id, len(pending), backoff, error,
        )
        self.events.batch.publish(
            BatchEvent("aborted", batch.batch_id, pending, batch.total_tokens, error=str(error))
        )

    def _record_batch(self, item_count: int, duration_ms: float) -> None:
        stats = self.stats
        stats["batches_processed"] += 1
        stats["items_processed"] += item_count
        stats["last_processed_at"] = self.clock().isoformat()
        n = stats["batches_processed"]
        stats["average_batch_time_ms"] = (stats["average_batch_time_ms"] * (n - 1) + duration_ms) / n

    # ------------------------------------------------------------------
    # Health and monitoring
    # ------------------------------------------------------------------

    def health_check(self) -> Dict[str, Any]:
        """Compute the health signal without changing any state."""
        status = self.queue.get_status()
        statistics = status["statistics"]
        cfg = self.health_config

        health = HealthStatus.HEALTHY
        issues = []

        if status["total_queued"] > cfg.high_queue_threshold:
            health = HealthStatus.WARNING
            issues.append(f"High queue volume ({status['total_queued']} queued)")

        throughput = statistics["queue_throughput"]
        if status["total_queued"] > 0 and throughput < cfg.min_throughput_per_hour:
            health = HealthStatus.WARNING
            issues.append(f"Low processing rate ({throughput} completed in the last hour)")

        processed = statistics["total_processed"]
        error_rate = statistics["total_failed"] / processed if processed else 0.0
        if error_rate > cfg.max_failure_rate:
            health = HealthStatus.CRITICAL
            issues.append(f"High error rate ({error_rate:.0%})")

        return {
            "status": health.value,
            "issues": issues,
            "queue_depth": status["total_queued"],
            "throughput_per_hour": throughput,
            "error_rate": round(error_rate, 3),
            "processor_state": self._state.value,
            "checked_at": self.clock().isoformat(),
        }

    def run_health_check(self) -> Dict[str, Any]:
        """Evaluate health, store it, and publish on a breach or change."""
        result = self.health_check()
        previous = self._health
        self._health = HealthStatus(result["status"])
        self._health_issues = result["issues"]

        if result["issues"] or self._health != previous:
            if result["issues"]:
                logger.warning("Health %s: %s", result["status"], "; ".join(result["issues"]))
            else:
                logger.info("Health recovered: %s", result["status"])
            self.events.health.publish(
                HealthEvent(result["status"], previous.value, list(result["issues"]))
            )
        return result

    @property
    def health(self) -> HealthStatus:
        return self._health

    def get_status(self) -> Dict[str, Any]:
        return {
            "processor": {
                "state": self._state.value,
                "is_running": self._running,
                "is_paused": self._paused,
                "system_health": self._health.value,
                "health_issues": list(self._health_issues),
                "uptime_s": self.uptime_s(),
                "current_batch": dict(self._current_batch) if self._current_batch else None,
                "backoff_until": self._backoff_until.isoformat() if self._backoff_until else None,
            },
            "queue": self.queue.get_status(),
            "statistics": dict(self.stats),
            "batching": self.scheduler.get_stats(),
            "rate_limiter": self.rate_limiter.get_status(),
        }

    def get_queue_details(self, status: Optional[str] = None, priority: Optional[str] = None) -> Dict[str, Any]:
        return self.queue.get_queue_details(status=status, priority=priority)

    def export_statistics(self) -> Dict[str, Any]:
        stats = dict(self.stats)
        stats["uptime_s"] = self.uptime_s()
        return {
            "timestamp": self.clock().isoformat(),
            "processor": stats,
            "queue": self.queue.get_statistics(),
            "batching": self.scheduler.get_stats(),
            "recommendations": self.scheduler.recommendations(),
            "rate_limiter": self.rate_limiter.get_status(),
            "configuration": {
                "processor": self.config.model_dump(),
                "health": self.health_config.model_dump(),
            },
        }
