from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from edenauth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_LOCAL_KEYS = 10_000


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int = 0


class RateLimiter:
    """Token-bucket limiter keyed by client identifier.

    Delegates to the shared Redis bucket when a cache is configured so every
    worker sees the same counters. Without one, a local bucket map is used;
    it is bounded by ``max_local_keys`` and full buckets are pruned first.
    """

    def __init__(
        self,
        cache=None,
        *,
        max_local_keys: int = DEFAULT_MAX_LOCAL_KEYS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.max_local_keys = max(1, max_local_keys)
        self._clock = clock
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    async def check(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        cost: int = 1,
    ) -> RateLimitDecision:
        if limit <= 0:
            return RateLimitDecision(True, limit)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
            )
            window_seconds = 60
        cost = max(1, cost)
        if self.cache is not None:
            allowed, remaining, retry_after = await self.cache.check_rate_limit(
                key, limit, window_seconds, cost=cost
            )
            return RateLimitDecision(allowed, remaining, retry_after)
        return self._check_local(key, limit, window_seconds, cost)

    def _check_local(
        self, key: str, limit: int, window_seconds: int, cost: int
    ) -> RateLimitDecision:
        refill_rate = float(limit) / float(window_seconds)
        now = self._clock()
        with self._lock:
            tokens, last_ts = self._buckets.get(key, (float(limit), now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            if key not in self._buckets and len(self._buckets) >= self.max_local_keys:
                self._prune_locked(now, refill_rate, limit)
            self._buckets[key] = (tokens, now)
        retry_after = 0
        if not allowed:
            retry_after = max(1, math.ceil((cost - tokens) / refill_rate))
        return RateLimitDecision(allowed, int(tokens), retry_after)

    def _prune_locked(self, now: float, refill_rate: float, limit: int) -> None:
        """Drop refilled buckets, then the stalest ones, until under the cap."""
        full = [
            k
            for k, (tokens, ts) in self._buckets.items()
            if tokens + (now - ts) * refill_rate >= limit
        ]
        for k in full:
            self._buckets.pop(k, None)
        overflow = len(self._buckets) - self.max_local_keys + 1
        if overflow > 0:
            stalest = sorted(self._buckets.items(), key=lambda item: item[1][1])
            for k, _ in stalest[:overflow]:
                self._buckets.pop(k, None)
        logger.debug("rate_limit_local_pruned", remaining_keys=len(self._buckets))

    def local_key_count(self) -> int:
        with self._lock:
            return len(self._buckets)

    async def close(self) -> None:
        with self._lock:
            self._buckets.clear()
