"""Pydantic models for configuration and validation."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Upper bound for max_batch_size, whatever the token budget allows
HARD_MAX_BATCH_SIZE = 50


class QueueConfig(BaseModel):
    """Work queue capacity, retry and housekeeping settings."""

    model_config = ConfigDict(frozen=True)

    max_queue_size: int = Field(
        default=2000, gt=0, description="Maximum number of queued (not in-flight) items"
    )
    max_retries: int = Field(
        default=3, ge=1, description="Failures after which an item becomes terminally failed"
    )
    retry_delay_s: float = Field(
        default=60.0, ge=0.0, description="Delay before a failed item re-enters its tier"
    )
    completed_history_size: int = Field(
        default=1000, gt=0, description="Completed items retained in memory"
    )
    failed_history_size: int = Field(
        default=500, gt=0, description="Failed items retained in memory"
    )
    dedup_recent_completed: int = Field(
        default=100, ge=0, description="Recent completions checked for duplicate content"
    )
    persist_interval_s: float = Field(
        default=30.0, gt=0.0, description="Snapshot interval in seconds"
    )
    cleanup_interval_s: float = Field(
        default=3600.0, gt=0.0, description="History purge interval in seconds"
    )
    history_max_age_s: float = Field(
        default=86400.0, gt=0.0, description="Completed/failed history older than this is purged"
    )


class BatchConfig(BaseModel):
    """Token-budget batching parameters."""

    model_config = ConfigDict(frozen=True)

    max_tokens_per_request: int = Field(
        default=800_000, gt=0, description="Hard per-call token ceiling (80% of a 1M window)"
    )
    token_buffer: int = Field(
        default=50_000, ge=0, description="Safety buffer absorbing estimation error"
    )
    base_prompt_tokens: int = Field(
        default=500, ge=0, description="Estimated tokens of the prompt template"
    )
    min_batch_size: int = Field(default=10, ge=1, description="Preferred minimum documents per call")
    max_batch_size: int = Field(default=25, ge=1, description="Maximum documents per call")
    target_batch_size: int = Field(default=18, ge=1, description="Target used for tuning advice")
    words_per_token: float = Field(
        default=0.75, gt=0.0, description="Empirical words-per-token ratio for estimates"
    )
    similarity_threshold: float = Field(
        default=0.7, ge=0.0, le=1.0, description="Jaccard threshold for keyword grouping"
    )
    grouping_threshold: int = Field(
        default=10, ge=1, description="Below this many items, similarity grouping is skipped"
    )

    @model_validator(mode="after")
    def check_sizes(self) -> "BatchConfig":
        """Validate batch size ordering and that the overhead leaves room for content."""
        if not (
            self.min_batch_size
            <= self.target_batch_size
            <= self.max_batch_size
            <= HARD_MAX_BATCH_SIZE
        ):
            raise ValueError(
                "expected min_batch_size <= target_batch_size <= max_batch_size "
                f"<= {HARD_MAX_BATCH_SIZE}, got {self.min_batch_size}/"
                f"{self.target_batch_size}/{self.max_batch_size}"
            )
        if self.max_tokens_per_request <= self.token_buffer + self.base_prompt_tokens:
            raise ValueError("max_tokens_per_request must exceed token_buffer + base_prompt_tokens")
        return self


class BusinessHours(BaseModel):
    """Local-clock dispatch window. Hours compare against the process clock only."""

    model_config = ConfigDict(frozen=True)

    start: int = Field(default=8, ge=0, le=23, description="First hour of the window")
    end: int = Field(default=18, ge=1, le=24, description="Hour at which the window closes")

    @field_validator("end")
    @classmethod
    def end_after_start(cls, v: int, info) -> int:
        """Validate that the window is non-empty."""
        if "start" in info.data and v <= info.data["start"]:
            raise ValueError(f"end ({v}) must be > start ({info.data['start']})")
        return v

    def contains(self, hour: int) -> bool:
        return self.start <= hour < self.end


class ProcessorConfig(BaseModel):
    """Background loop timing."""

    model_config = ConfigDict(frozen=True)

    processing_interval_s: float = Field(
        default=10.0, gt=0.0, description="Polling interval of the main loop"
    )
    dequeue_size: int = Field(default=20, ge=1, description="Items pulled per dispatch cycle")
    enable_scheduling: bool = Field(
        default=False, description="Only dispatch inside business hours"
    )
    business_hours: BusinessHours = Field(default_factory=BusinessHours)
    rate_limit_backoff_s: float = Field(
        default=60.0, ge=0.0, description="Pause after the rate limiter refuses a call"
    )
    stop_poll_interval_s: float = Field(
        default=1.0, gt=0.0, description="Polling period while stop() drains the current batch"
    )


class HealthConfig(BaseModel):
    """Thresholds of the tri-state health signal."""

    model_config = ConfigDict(frozen=True)

    check_interval_s: float = Field(default=60.0, gt=0.0, description="Health check period")
    high_queue_threshold: int = Field(
        default=1000, ge=0, description="Queued items above which volume is flagged"
    )
    min_throughput_per_hour: float = Field(
        default=5.0, ge=0.0, description="Completions per hour below which throughput is flagged"
    )
    max_failure_rate: float = Field(
        default=0.2, ge=0.0, le=1.0, description="Failed/processed ratio that forces critical"
    )


class RateLimitConfig(BaseModel):
    """External service call ceilings."""

    model_config = ConfigDict(frozen=True)

    requests_per_minute: int = Field(default=12, gt=0, description="Per-minute call ceiling")
    requests_per_day: int = Field(default=180, gt=0, description="Per-day call ceiling")


class StorageConfig(BaseModel):
    """Durable snapshot location."""

    model_config = ConfigDict(frozen=True)

    db_path: str = Field(default="data/queue.db", description="SQLite snapshot database")
    keep_snapshots: int = Field(default=5, ge=1, description="Snapshots retained in the table")


class ResumeBatcherConfig(BaseModel):
    """Complete application configuration, resolved once and immutable."""

    model_config = ConfigDict(frozen=True)

    queue: QueueConfig = Field(default_factory=QueueConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    processor: ProcessorConfig = Field(default_factory=ProcessorConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ResumeBatcherConfig":
        """Create config from nested dict (YAML)."""
        return cls(**(data or {}))
