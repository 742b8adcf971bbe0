"""Per-minute and per-day call ceilings for the generation service."""

import logging
import threading
import time
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .collaborators import RateLimiter
from .exceptions import RateLimitExceeded
from .models import RateLimitConfig

logger = logging.getLogger(__name__)

WINDOW = timedelta(minutes=1)
MIN_WAIT_S = 1.0


class SlidingWindowRateLimiter(RateLimiter):
    """Sliding one-minute window plus a daily counter reset at local midnight.

    Calls are also spread evenly, at least ``60 / requests_per_minute``
    seconds apart, so a burst never spends the whole minute at once.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize limiter.

        Args:
            config: Ceilings (defaults: 12 per minute, 180 per day)
            clock: Returns the current local time
            sleep: Blocks for the given number of seconds
        """
        self.config = config or RateLimitConfig()
        self.clock = clock
        self.sleep = sleep
        self._lock = threading.Lock()
        self._minute_calls: deque = deque()
        self._day_calls = 0
        self._day = self.clock().date()
        logger.info(
            "Rate limiter: %d requests/minute, %d requests/day",
            self.config.requests_per_minute, self.config.requests_per_day,
        )

    @property
    def spacing_s(self) -> float:
        return 60.0 / self.config.requests_per_minute

    def _refresh(self, now: datetime) -> None:
        if now.date() != self._day:
            logger.info("Daily rate limit counter reset for %s", now.date().isoformat())
            self._day = now.date()
            self._day_calls = 0
        while self._minute_calls and self._minute_calls[0] <= now - WINDOW:
            self._minute_calls.popleft()

    def _required_wait(self, now: datetime) -> float:
        """Seconds to wait before a call may be made now (0 if none)."""
        self._refresh(now)
        if self._day_calls >= self.config.requests_per_day:
            raise RateLimitExceeded(
                f"Daily limit of {self.config.requests_per_day} requests reached",
                retry_after_s=self._seconds_until_tomorrow(now),
            )
        if len(self._minute_calls) >= self.config.requests_per_minute:
            oldest = self._minute_calls[0]
            return max(MIN_WAIT_S, (oldest + WINDOW - now).total_seconds())
        if self._minute_calls:
            since_last = (now - self._minute_calls[-1]).total_seconds()
            return max(0.0, self.spacing_s - since_last)
        return 0.0

    def _seconds_until_tomorrow(self, now: datetime) -> float:
        tomorrow = datetime.combine(now.date() + timedelta(days=1), datetime.min.time())
        return (tomorrow - now).total_seconds()

    def await_permit(self) -> None:
        """Block until a call is allowed, then record it.

        Raises:
            RateLimitExceeded: The daily ceiling is spent
        """
        with self._lock:
            while True:
                now = self.clock()
                wait = self._required_wait(now)
                if wait <= 0:
                    break
                logger.debug("Waiting %.1fs to stay under %d RPM", wait, self.config.requests_per_minute)
                self.sleep(wait)

            self._minute_calls.append(now)
            self._day_calls += 1
            logger.debug(
                "API call %d/%d today, %d/%d this minute",
                self._day_calls, self.config.requests_per_day,
                len(self._minute_calls), self.config.requests_per_minute,
            )

    def remaining_today(self) -> int:
        with self._lock:
            self._refresh(self.clock())
            return max(0, self.config.requests_per_day - self._day_calls)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            now = self.clock()
            self._refresh(now)
            return {
                "daily_usage": f"{self._day_calls}/{self.config.requests_per_day}",
                "minute_usage": f"{len(self._minute_calls)}/{self.config.requests_per_minute}",
                "remaining_today": max(0, self.config.requests_per_day - self._day_calls),
                "can_make_request": (
                    self._day_calls < self.config.requests_per_day
                    and len(self._minute_calls) < self.config.requests_per_minute
                ),
            }
