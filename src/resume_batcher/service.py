"""Top-level processing system: wires the queue, scheduler and processor together.

There is no module-level instance. Build one with ProcessingSystem.from_config
and hand it to whatever needs it (the HTTP app, a script, a test).
"""

import logging
import math
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .collaborators import GenerationClient, RateLimiter, ResponseParser, TextExtractor, TextOptimizer
from .config import resolve_config
from .events import EventBus
from .exceptions import ValidationError
from .extraction import PlainTextExtractor
from .models import ResumeBatcherConfig
from .orchestrator import BackgroundProcessor
from .parsing import JsonRecordParser
from .queue.backends import SnapshotStore
from .queue.sqlite_backend import SQLiteSnapshotStore
from .queue.work_queue import WorkQueue
from .rate_limiter import SlidingWindowRateLimiter
from .scheduler import BatchScheduler

logger = logging.getLogger(__name__)

DAILY_TARGET = 1000
ACCEPT_MORE_BELOW = 500
FALLBACK_THROUGHPUT_PER_HOUR = 20
CONTROL_ACTIONS = ("pause", "resume", "stop")


class ProcessingSystem:
    """Facade over one BackgroundProcessor and everything it owns."""

    def __init__(self, processor: BackgroundProcessor, config: ResumeBatcherConfig):
        self.processor = processor
        self.config = config

    @classmethod
    def from_config(
        cls,
        client: GenerationClient,
        config: Optional[ResumeBatcherConfig] = None,
        store: Optional[SnapshotStore] = None,
        extractor: Optional[TextExtractor] = None,
        optimizer: Optional[TextOptimizer] = None,
        parser: Optional[ResponseParser] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "ProcessingSystem":
        """Build a fully wired system.

        Args:
            client: Generation service client
            config: Resolved configuration (default: resolve_config())
            store: Snapshot store (default: SQLite at storage.db_path)
            extractor: Raw document extractor (default: PlainTextExtractor)
            optimizer: Optional text compressor
            parser: Record parser (default: JsonRecordParser)
            rate_limiter: Call gate (default: SlidingWindowRateLimiter)
            clock: Local time source shared by every component
            sleep: Used by the default rate limiter
        """
        config = config or resolve_config()
        events = EventBus()
        if store is None:
            store = SQLiteSnapshotStore(config.storage.db_path, keep=config.storage.keep_snapshots)

        queue = WorkQueue(config.queue, store=store, events=events, clock=clock)
        processor = BackgroundProcessor(
            queue=queue,
            scheduler=BatchScheduler(config.batch),
            client=client,
            rate_limiter=rate_limiter or SlidingWindowRateLimiter(config.rate_limit, clock=clock, sleep=sleep),
            parser=parser or JsonRecordParser(),
            extractor=extractor or PlainTextExtractor(),
            optimizer=optimizer,
            config=config.processor,
            health_config=config.health,
            events=events,
            clock=clock,
        )
        logger.info("Processing system ready (%d item(s) restored)", queue.queued_count())
        return cls(processor, config)

    @property
    def queue(self) -> WorkQueue:
        return self.processor.queue

    @property
    def events(self) -> EventBus:
        return self.processor.events

    # Lifecycle

    def start(self) -> None:
        self.processor.start()

    def stop(self) -> None:
        self.processor.stop()

    def pause(self) -> None:
        self.processor.pause()

    def resume(self) -> None:
        self.processor.resume()

    def control(self, action: str) -> Dict[str, Any]:
        """Apply a lifecycle action by name (pause, resume, stop).

        Raises:
            ValidationError: Unknown action
        """
        if action not in CONTROL_ACTIONS:
            raise ValidationError(
                f"Unknown action '{action}' (expected one of: {', '.join(CONTROL_ACTIONS)})"
            )
        getattr(self, action)()
        return {"action": action, "state": self.processor.state.value}

    # Producer

    def queue_documents(
        self,
        payloads,
        priority: str = "normal",
        context: str = "",
        source: str = "api",
    ) -> List[str]:
        return self.processor.queue_documents(payloads, priority=priority, context=context, source=source)

    # Monitoring

    def get_status(self) -> Dict[str, Any]:
        return self.processor.get_status()

    def get_queue_details(self, status: Optional[str] = None, priority: Optional[str] = None) -> Dict[str, Any]:
        return self.processor.get_queue_details(status=status, priority=priority)

    def export_statistics(self) -> Dict[str, Any]:
        return self.processor.export_statistics()

    def health_check(self) -> Dict[str, Any]:
        return self.processor.health_check()

    def estimate_completion_time(self, count: int) -> str:
        """Human-readable time to process ``count`` documents at current throughput.

        Falls back to 20 per hour while nothing has completed in the last hour.
        """
        if count <= 0:
            raise ValidationError(f"count must be positive, got {count}")
        throughput = self.queue.throughput() or FALLBACK_THROUGHPUT_PER_HOUR
        hours = count / throughput
        if hours < 1:
            return f"{math.ceil(hours * 60)} minutes"
        if hours < 24:
            return f"{hours:.1f} hours"
        return f"{hours / 24:.1f} days"

    def capacity(self) -> Dict[str, Any]:
        """Daily capacity projection and whether more work should be accepted."""
        status = self.queue.get_status()
        throughput = status["statistics"]["queue_throughput"]
        projected_daily = throughput * 24
        return {
            "daily_target": DAILY_TARGET,
            "current_throughput": throughput,
            "projected_daily": round(projected_daily),
            "utilization_rate": round(projected_daily / DAILY_TARGET * 100),
            "queue_size": status["total_queued"],
            "processing": status["processing"],
            "can_accept_more": status["total_queued"] < ACCEPT_MORE_BELOW,
            "api_limits": self.processor.rate_limiter.get_status(),
        }
