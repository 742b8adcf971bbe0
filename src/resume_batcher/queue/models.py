"""Pydantic models for work queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization, so the same
objects are held in memory and written into crash-recovery snapshots.
"""

import base64
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)


class Priority(str, Enum):
    """Priority tiers. Dequeue walks them in declaration order."""

    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


PRIORITY_ORDER = (Priority.URGENT, Priority.HIGH, Priority.NORMAL, Priority.LOW)


class ItemStatus(str, Enum):
    """Item processing states with explicit semantics.

    State transitions:
        queued     → processing  (dequeue)
        processing → completed   (mark_completed)
        processing → retrying    (mark_failed, retries left)
        retrying   → queued      (retry delay elapsed, front of its tier)
        processing → failed      (mark_failed, retries exhausted)
        processing → queued      (release after a rate-limited dispatch)
    """

    QUEUED = "queued"  # Waiting in a priority tier
    PROCESSING = "processing"  # Dequeued, part of the in-flight set
    RETRYING = "retrying"  # Failed, waiting out the retry delay
    COMPLETED = "completed"  # Result recorded
    FAILED = "failed"  # Retries exhausted


class DocumentPayload(BaseModel):
    """Document handed in by a producer.

    Either pre-extracted ``text`` or raw ``content`` bytes must be present.
    Raw bytes are base64-encoded when serialized to JSON.
    """

    filename: str = Field(default="document", description="Original file name")
    text: Optional[str] = Field(default=None, description="Pre-extracted document text")
    content: Optional[bytes] = Field(default=None, description="Raw document bytes")
    mime_type: str = Field(default="application/pdf", description="Content type of the raw bytes")
    size: int = Field(default=0, ge=0, description="Original size in bytes")

    @field_validator("content", mode="before")
    @classmethod
    def decode_content(cls, v: Any) -> Any:
        """Accept base64 strings (snapshot form) as well as raw bytes."""
        if isinstance(v, str):
            return base64.b64decode(v)
        return v

    @field_serializer("content", when_used="json")
    def encode_content(self, v: Optional[bytes]) -> Optional[str]:
        if v is None:
            return None
        return base64.b64encode(v).decode("ascii")

    @model_validator(mode="after")
    def require_text_or_content(self) -> "DocumentPayload":
        """Validate that there is something to process."""
        if not self.text and not self.content:
            raise ValueError("document needs either text or content")
        if not self.size:
            self.size = len(self.content) if self.content else len(self.text.encode("utf-8"))
        return self


class QueueItem(BaseModel):
    """A unit of work and its full lifecycle record."""

    item_id: str = Field(..., description="Unique item identifier (UUID hex)")
    payload: DocumentPayload = Field(..., description="Document to process")
    priority: Priority = Field(default=Priority.NORMAL, description="Priority tier")
    status: ItemStatus = Field(default=ItemStatus.QUEUED, description="Current state")
    retry_count: int = Field(default=0, ge=0, description="Failed attempts so far")
    content_hash: str = Field(..., description="SHA-256 fingerprint used for dedup")
    context: str = Field(default="", description="Shared job context, e.g. a job description")
    source: str = Field(default="api", description="Producer that queued the item")
    batch_ref: Optional[str] = Field(default=None, description="Batch the item was last dispatched in")
    created_at: datetime = Field(default_factory=datetime.now, description="Queue time")
    updated_at: datetime = Field(default_factory=datetime.now, description="Last transition")
    processing_started: Optional[datetime] = Field(default=None, description="Dequeue time")
    processing_completed: Optional[datetime] = Field(default=None, description="Terminal time")
    processing_time_ms: Optional[float] = Field(default=None, description="Dequeue to terminal")
    last_error: Optional[str] = Field(default=None, description="Last error message (truncated)")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Parsed result on success")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="filename, size, mime_type")

    def summary(self) -> Dict[str, Any]:
        """Compact projection used by status and detail views."""
        return {
            "id": self.item_id,
            "filename": self.metadata.get("filename", self.payload.filename),
            "status": self.status.value,
            "priority": self.priority.value,
            "retries": self.retry_count,
            "created_at": self.created_at.isoformat(),
            "processing_started": (
                self.processing_started.isoformat() if self.processing_started else None
            ),
            "processing_completed": (
                self.processing_completed.isoformat() if self.processing_completed else None
            ),
            "processing_time_ms": self.processing_time_ms,
            "error": self.last_error,
        }


class QueueStatistics(BaseModel):
    """Running counters of the work queue."""

    total_queued: int = Field(default=0, ge=0, description="Items ever accepted")
    total_processed: int = Field(default=0, ge=0, description="Items that reached a terminal state")
    total_completed: int = Field(default=0, ge=0, description="Successful items")
    total_failed: int = Field(default=0, ge=0, description="Terminally failed items")
    total_retried: int = Field(default=0, ge=0, description="Failures that were re-queued")
    average_processing_time_ms: float = Field(default=0.0, ge=0.0, description="Running mean")
    last_reset: datetime = Field(default_factory=datetime.now, description="Last reset time")


class RetryEntry(BaseModel):
    """An item waiting out its retry delay."""

    due_at: datetime = Field(..., description="When the item re-enters its tier")
    item: QueueItem = Field(..., description="The failed item")


class QueueSnapshot(BaseModel):
    """Crash-recovery image of the queue. Not authoritative while live.

    In-flight items with status ``processing`` are deliberately absent:
    a crash mid-dispatch loses them.
    """

    tiers: Dict[Priority, List[QueueItem]] = Field(default_factory=dict)
    retry_pending: List[RetryEntry] = Field(default_factory=list)
    statistics: QueueStatistics = Field(default_factory=QueueStatistics)
    saved_at: datetime = Field(default_factory=datetime.now)
