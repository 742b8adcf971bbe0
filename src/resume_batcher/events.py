"""Typed notification channels.

Components publish plain dataclass events on an EventChannel; observers
subscribe callables. A failing observer is logged and skipped, it never
breaks the component that published.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventChannel(Generic[T]):
    """A single typed observer list."""

    def __init__(self, name: str):
        self.name = name
        self._handlers: List[Callable[[T], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Callable[[T], None]) -> Callable[[], None]:
        """Register a handler.

        Returns:
            A callable that removes the handler again
        """
        with self._lock:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def publish(self, event: T) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Handler %r on channel %s failed", handler, self.name)

    def __len__(self) -> int:
        return len(self._handlers)


@dataclass
class QueueEvent:
    """Item lifecycle change in the work queue."""
    kind: str                        # queued, dequeued, completed, retrying, requeued, failed, released
    item_ids: List[str]
    priority: Optional[str] = None
    error: Optional[str] = None
    at: datetime = field(default_factory=datetime.now)


@dataclass
class BatchEvent:
    """Dispatch outcome of one batch."""
    kind: str                        # started, completed, failed, aborted
    batch_id: str
    item_ids: List[str]
    estimated_tokens: int = 0
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    at: datetime = field(default_factory=datetime.now)


@dataclass
class HealthEvent:
    """Health check result that breached a threshold or changed state."""
    status: str                      # healthy, warning, critical
    previous: Optional[str]
    issues: List[str]
    at: datetime = field(default_factory=datetime.now)


@dataclass
class ProcessorEvent:
    """Background processor lifecycle change."""
    kind: str                        # started, paused, resumed, stopped
    state: str
    at: datetime = field(default_factory=datetime.now)


class EventBus:
    """The channels shared by one processing system."""

    def __init__(self):
        self.queue: EventChannel[QueueEvent] = EventChannel("queue")
        self.batch: EventChannel[BatchEvent] = EventChannel("batch")
        self.health: EventChannel[HealthEvent] = EventChannel("health")
        self.processor: EventChannel[ProcessorEvent] = EventChannel("processor")
