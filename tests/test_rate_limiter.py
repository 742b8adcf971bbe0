from datetime import datetime

import pytest

from resume_batcher.exceptions import RateLimitExceeded
from resume_batcher.models import RateLimitConfig
from resume_batcher.rate_limiter import SlidingWindowRateLimiter


@pytest.fixture
def sleeps(clock):
    """Sleep stand-in that advances the fake clock and records each wait."""
    waits = []

    def sleep(seconds):
        waits.append(seconds)
        clock.advance(seconds)

    sleep.waits = waits
    return sleep


def make_limiter(clock, sleep, rpm=2, rpd=3):
    config = RateLimitConfig(requests_per_minute=rpm, requests_per_day=rpd)
    return SlidingWindowRateLimiter(config, clock=clock, sleep=sleep)


def test_first_call_does_not_wait(clock, sleeps):
    limiter = make_limiter(clock, sleeps)
    limiter.await_permit()
    assert sleeps.waits == []
    assert limiter.remaining_today() == 2


def test_calls_are_spaced(clock, sleeps):
    limiter = make_limiter(clock, sleeps)
    limiter.await_permit()
    limiter.await_permit()
    assert sleeps.waits == [30.0]


def test_full_minute_waits_for_window(clock, sleeps):
    limiter = make_limiter(clock, sleeps, rpm=2, rpd=100)
    for _ in range(3):
        limiter.await_permit()

    # Second call waits out the spacing, third waits for the oldest call to leave the window
    assert sleeps.waits == [30.0, 30.0]
    status = limiter.get_status()
    assert status["minute_usage"] == "2/2"
    assert status["daily_usage"] == "3/100"


def test_daily_ceiling_raises_until_midnight(clock, sleeps):
    limiter = make_limiter(clock, sleeps, rpm=60, rpd=1)
    limiter.await_permit()

    with pytest.raises(RateLimitExceeded) as exc_info:
        limiter.await_permit()

    # 10:00 local, 14 hours until the counter resets
    assert exc_info.value.retry_after_s == pytest.approx(14 * 3600)
    assert limiter.remaining_today() == 0
    assert limiter.get_status()["can_make_request"] is False


def test_daily_counter_resets_on_new_day(clock, sleeps):
    limiter = make_limiter(clock, sleeps, rpm=60, rpd=1)
    limiter.await_permit()

    clock.now = datetime(2026, 3, 3, 0, 0, 1)

    limiter.await_permit()
    assert limiter.remaining_today() == 0


def test_spacing_property(clock, sleeps):
    assert make_limiter(clock, sleeps, rpm=12).spacing_s == 5.0
