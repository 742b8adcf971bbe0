import json
import re
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from resume_batcher.collaborators import GenerationClient, RateLimiter
from resume_batcher.events import EventBus
from resume_batcher.exceptions import RateLimitExceeded
from resume_batcher.models import BatchConfig, HealthConfig, ProcessorConfig, QueueConfig, ResumeBatcherConfig
from resume_batcher.orchestrator import BackgroundProcessor
from resume_batcher.parsing import JsonRecordParser
from resume_batcher.queue import SQLiteSnapshotStore, WorkQueue
from resume_batcher.scheduler import BatchScheduler
from resume_batcher.service import ProcessingSystem

DOC_MARKER = re.compile(r"===== RESUME (\d+) =====")


class FakeClock:
    """Manually advanced local clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 2, 10, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class FakeClient(GenerationClient):
    """Returns one well-formed record per document found in the prompt."""

    def __init__(self, response=None, error=None):
        self.prompts = []
        self.response = response
        self.error = error

    def generate(self, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        if self.response is not None:
            return self.response
        count = len(DOC_MARKER.findall(prompt))
        records = {
            f"item_{i}": {"name": f"Candidate {i}", "skills": ["python"], "email": f"c{i}@example.com"}
            for i in range(1, count + 1)
        }
        return "```json\n" + json.dumps(records) + "\n```"


class CountingLimiter(RateLimiter):
    """Grants every permit, or refuses after ``allow`` permits."""

    def __init__(self, allow=None):
        self.allow = allow
        self.granted = 0

    def await_permit(self):
        if self.allow is not None and self.granted >= self.allow:
            raise RateLimitExceeded("Daily limit reached", retry_after_s=0.0)
        self.granted += 1

    def get_status(self):
        return {"granted": self.granted}


def make_docs(n, prefix="doc"):
    return [{"filename": f"{prefix}_{i}.txt", "text": f"{prefix} number {i} python developer"} for i in range(n)]


@pytest.fixture
def temp_db():
    """Create temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield str(Path(tmpdir) / "test_queue.db")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue_config():
    return QueueConfig(max_queue_size=50, max_retries=3, retry_delay_s=60)


@pytest.fixture
def store(temp_db):
    return SQLiteSnapshotStore(temp_db)


@pytest.fixture
def queue(queue_config, store, clock):
    return WorkQueue(queue_config, store=store, events=EventBus(), clock=clock)


@pytest.fixture
def batch_config():
    return BatchConfig(
        max_tokens_per_request=5000,
        token_buffer=0,
        base_prompt_tokens=1000,
        min_batch_size=2,
        target_batch_size=5,
        max_batch_size=10,
    )


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def limiter():
    return CountingLimiter()


@pytest.fixture
def processor(queue, batch_config, fake_client, limiter, clock):
    return BackgroundProcessor(
        queue=queue,
        scheduler=BatchScheduler(batch_config),
        client=fake_client,
        rate_limiter=limiter,
        parser=JsonRecordParser(),
        config=ProcessorConfig(processing_interval_s=60, rate_limit_backoff_s=30, stop_poll_interval_s=0.01),
        health_config=HealthConfig(),
        clock=clock,
    )


@pytest.fixture
def system(store, fake_client, limiter, clock):
    """Processing system with small batches and test doubles wired in."""
    config = ResumeBatcherConfig.from_dict({
        "queue": {"max_queue_size": 20},
        "batch": {
            "max_tokens_per_request": 5000,
            "token_buffer": 0,
            "base_prompt_tokens": 1000,
            "min_batch_size": 2,
            "target_batch_size": 5,
            "max_batch_size": 10,
        },
        "processor": {"processing_interval_s": 60, "stop_poll_interval_s": 0.01},
    })
    return ProcessingSystem.from_config(
        fake_client, config=config, store=store, rate_limiter=limiter, clock=clock
    )
