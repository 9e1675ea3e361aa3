from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Mapping

import redis

from voucher_market.core.config import RATE_LIMIT_POLICIES, REDIS_URL

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "general"


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int
    window_seconds: int


class RateLimiterService(ABC):
    def __init__(self, *, policies: Mapping[str, tuple[int, int]] | None = None) -> None:
        self.policies = dict(policies or RATE_LIMIT_POLICIES)

    def policy_for(self, scope: str) -> tuple[int, int]:
        return self.policies.get(scope) or self.policies[DEFAULT_SCOPE]

    @abstractmethod
    def check(self, *, client_id: str, scope: str = DEFAULT_SCOPE) -> RateLimitDecision:
        """Count one request for client_id within scope and decide whether it may proceed."""


class InMemoryRateLimiterService(RateLimiterService):
    """Sliding-window limiter kept in process memory.

    Counters are per process and reset on restart, so enforcement is
    approximate when several instances run side by side.
    """

    SWEEP_INTERVAL_SECONDS = 60

    def __init__(self, *, policies: Mapping[str, tuple[int, int]] | None = None, clock=time.monotonic) -> None:
        super().__init__(policies=policies)
        self._clock = clock
        self._store: dict[tuple[str, str], deque[float]] = {}
        self._lock = Lock()
        self._last_sweep = clock()

    def _sweep_idle(self, now: float) -> None:
        """Forget clients whose whole window has elapsed. Caller holds the lock."""
        idle = [
            key for key, bucket in self._store.items() if not bucket or bucket[-1] <= now - self.policy_for(key[0])[1]
        ]
        for key in idle:
            del self._store[key]
        self._last_sweep = now

    def check(self, *, client_id: str, scope: str = DEFAULT_SCOPE) -> RateLimitDecision:
        limit, window_seconds = self.policy_for(scope)
        now = self._clock()
        key = (scope, client_id)

        with self._lock:
            if now - self._last_sweep >= self.SWEEP_INTERVAL_SECONDS:
                self._sweep_idle(now)
            bucket = self._store.setdefault(key, deque())
            cutoff = now - window_seconds
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()

            if len(bucket) >= limit:
                retry_after = max(1, int(window_seconds - (now - bucket[0])))
                return RateLimitDecision(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    retry_after_seconds=retry_after,
                    window_seconds=window_seconds,
                )

            bucket.append(now)
            return RateLimitDecision(
                allowed=True,
                limit=limit,
                remaining=max(0, limit - len(bucket)),
                retry_after_seconds=0,
                window_seconds=window_seconds,
            )


class RedisRateLimiterService(RateLimiterService):
    """Fixed-window limiter shared across instances through Redis SET NX EX + INCR.

    If Redis is unreachable the request is allowed and a warning is logged.
    """

    KEY_PREFIX = "rate_limit"

    def __init__(self, client: "redis.Redis", *, policies: Mapping[str, tuple[int, int]] | None = None) -> None:
        super().__init__(policies=policies)
        self._client = client

    def check(self, *, client_id: str, scope: str = DEFAULT_SCOPE) -> RateLimitDecision:
        limit, window_seconds = self.policy_for(scope)
        key = f"{self.KEY_PREFIX}:{scope}:{client_id}"

        try:
            # the key is created with its expiry in the same transaction as the increment
            pipe = self._client.pipeline()
            pipe.set(key, 0, ex=window_seconds, nx=True)
            pipe.incr(key)
            pipe.ttl(key)
            _, current, ttl = pipe.execute()
            current = int(current)
        except redis.RedisError:
            logger.warning("Rate limiter backend unavailable; allowing request scope=%s", scope)
            return RateLimitDecision(
                allowed=True,
                limit=limit,
                remaining=limit,
                retry_after_seconds=0,
                window_seconds=window_seconds,
            )

        retry_after = int(ttl) if ttl and int(ttl) > 0 else window_seconds
        if current > limit:
            return RateLimitDecision(
                allowed=False,
                limit=limit,
                remaining=0,
                retry_after_seconds=retry_after,
                window_seconds=window_seconds,
            )
        return RateLimitDecision(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - current),
            retry_after_seconds=0,
            window_seconds=window_seconds,
        )


def build_rate_limiter(redis_url: str | None = None) -> RateLimiterService:
    url = REDIS_URL if redis_url is None else redis_url
    if not url:
        return InMemoryRateLimiterService()
    logger.info("Rate limiter using Redis counters")
    return RedisRateLimiterService(redis.Redis.from_url(url, decode_responses=True, socket_timeout=1))
