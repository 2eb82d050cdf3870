"""API usage accounting.

The usage counter is the only record of how many paid AI calls a session made.
Components receive a tracker explicitly and only ever call ``increment``; the
pipeline controller is the sole owner allowed to reset it.
"""

from __future__ import annotations

import datetime as dt
import hashlib
from typing import Callable, Protocol

from redis import Redis
from redis.exceptions import RedisError

from studyquiz.logging_config import get_logger

logger = get_logger(__name__)

FREE_TIER_BUDGET = 50
UNLIMITED_BUDGET = 9999


class UsageTracker(Protocol):
    def increment(self, amount: int = 1) -> None: ...

    def get(self) -> int: ...


def _today() -> dt.date:
    return dt.datetime.now(dt.timezone.utc).date()


class InMemoryUsageTracker:
    """Daily usage counter capped at a budget; rolls over when the date changes."""

    def __init__(self, budget: int = FREE_TIER_BUDGET, clock: Callable[[], dt.date] = _today) -> None:
        self.budget = budget
        self._clock = clock
        self._date = clock()
        self._used = 0

    def _roll(self) -> None:
        today = self._clock()
        if today != self._date:
            self._date = today
            self._used = 0

    def increment(self, amount: int = 1) -> None:
        self._roll()
        self._used = min(self._used + amount, self.budget)

    def get(self) -> int:
        self._roll()
        return self._used

    @property
    def remaining(self) -> int:
        return max(0, self.budget - self.get())

    def reset(self) -> None:
        self._date = self._clock()
        self._used = 0


class RedisUsageTracker:
    """Usage counter shared across service workers, keyed by API-key fingerprint and day."""

    def __init__(self, redis_url: str, api_key: str, budget: int = FREE_TIER_BUDGET, ttl_seconds: int = 2 * 86400) -> None:
        self.client = Redis.from_url(redis_url, decode_responses=True)
        self.fingerprint = hashlib.sha1(api_key.encode("utf-8")).hexdigest()[:16]
        self.budget = budget
        self.ttl_seconds = ttl_seconds

    @property
    def key(self) -> str:
        return f"usage:{self.fingerprint}:{_today().isoformat()}"

    def increment(self, amount: int = 1) -> None:
        try:
            used = int(self.client.incrby(self.key, amount))
            self.client.expire(self.key, self.ttl_seconds)
        except RedisError:
            logger.warning("Failed to record usage | key=%s", self.fingerprint, exc_info=True)
            return
        if used > self.budget:
            logger.warning("Usage over budget | key=%s used=%s budget=%s", self.fingerprint, used, self.budget)

    def get(self) -> int:
        raw = self.client.get(self.key)
        return min(int(raw or 0), self.budget)

    def reset(self) -> None:
        self.client.delete(self.key)
