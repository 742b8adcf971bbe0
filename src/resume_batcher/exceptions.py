"""Exception taxonomy for the queue, scheduler and background processor.

Only ``CapacityExceeded`` and ``ValidationError`` ever cross the producer
boundary (``enqueue``). Everything raised during dispatch is absorbed by the
background processor and turned into queue state transitions.
"""


class ResumeBatcherError(Exception):
    """Base class for all errors raised by this package."""


class CapacityExceeded(ResumeBatcherError):
    """Enqueue rejected because the queue is full. Queue left unchanged."""

    def __init__(self, max_size: int, queued: int, requested: int):
        self.max_size = max_size
        self.queued = queued
        self.requested = requested
        super().__init__(
            f"Queue capacity exceeded: {queued} queued + {requested} new > maximum {max_size}"
        )


class ValidationError(ResumeBatcherError):
    """Malformed item or option rejected at enqueue time."""


class ItemNotInFlight(ResumeBatcherError):
    """Completion or failure reported for an item that is not being processed."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item not found in processing: {item_id}")


class ProcessingError(ResumeBatcherError):
    """Retryable failure while extracting, optimizing, calling or parsing."""


class UnsupportedFileType(ProcessingError):
    """Raw document bytes in a format the extractor cannot read."""


class EmptyDocument(ProcessingError):
    """Raw document is empty or yields no text."""


class LowQualityExtraction(ProcessingError):
    """Extracted text too short to be worth sending to the service."""


class ParseError(ProcessingError):
    """Service response could not be mapped to a structured record."""


class BatchDispatchError(ProcessingError):
    """Transport-level failure while calling the generation service."""


class RateLimitExceeded(ResumeBatcherError):
    """External call ceiling reached; dispatch aborts without consuming retries."""

    def __init__(self, message: str, retry_after_s: float = 0.0):
        self.retry_after_s = retry_after_s
        super().__init__(message)


class PersistenceError(ResumeBatcherError):
    """Snapshot could not be written or read. Logged and retried, never fatal."""
