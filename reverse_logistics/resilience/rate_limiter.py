"""
Rate limiters using a sliding window algorithm.

Guards RTO triggers per company and per shipment. The in-memory limiter
serves a single process; the Redis limiter shares the window across worker
processes through a sorted set per key.
"""

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict

import redis.asyncio as redis


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate limit check."""
    allowed: bool
    remaining: int
    retry_after: float  # seconds until a slot frees up, 0 when allowed


class RateLimiter:
    """
    Sliding window rate limiter.

    Uses a sliding window approach to track requests over time,
    providing smooth rate limiting without burst allowances.
    """

    def __init__(self, max_requests: int, window_seconds: float):
        self.max_requests = max_requests
        self.window_seconds = window_seconds

        # Track request timestamps per key (company, shipment)
        self._requests: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()
        self._last_sweep = 0.0

    def _prune(self, key: str, current_time: float) -> Deque[float]:
        request_times = self._requests.get(key, deque())
        while request_times and current_time - request_times[0] >= self.window_seconds:
            request_times.popleft()
        # Keys whose window emptied are dropped so idle shipments do not pile up
        if not request_times:
            self._requests.pop(key, None)
        return request_times

    def _evict_idle(self, current_time: float) -> None:
        if current_time - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = current_time
        idle = [key for key, times in self._requests.items()
                if not times or current_time - times[-1] >= self.window_seconds]
        for key in idle:
            del self._requests[key]

    async def hit(self, key: str) -> RateLimitDecision:
        """
        Record a request for ``key`` if the window has room.

        Args:
            key: Identifier for rate limiting (e.g. ``rto:company:c-1``)

        Returns:
            RateLimitDecision: whether the request was admitted and, if not,
            how long until the oldest request leaves the window
        """
        async with self._lock:
            current_time = time.time()
            self._evict_idle(current_time)
            request_times = self._prune(key, current_time)

            if len(request_times) < self.max_requests:
                request_times.append(current_time)
                self._requests[key] = request_times
                return RateLimitDecision(True, self.max_requests - len(request_times), 0.0)

            retry_after = request_times[0] + self.window_seconds - current_time
            return RateLimitDecision(False, 0, max(retry_after, 0.0))

    async def allow_request(self, key: str) -> bool:
        """Check and record a request, returning only the verdict."""
        return (await self.hit(key)).allowed

    async def get_remaining_requests(self, key: str) -> int:
        """Get number of remaining requests for the key."""
        async with self._lock:
            return max(0, self.max_requests - len(self._prune(key, time.time())))

    async def clear_key(self, key: str) -> None:
        """Clear rate limit data for a specific key."""
        async with self._lock:
            self._requests.pop(key, None)


class RedisRateLimiter:
    """
    Sliding window rate limiter shared through Redis.

    Each key is a sorted set of request timestamps. Pruning, counting and
    insertion run in one MULTI/EXEC pipeline; a request that pushed the
    count over the limit is removed again so rejected calls do not consume
    window capacity.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        client_factory: Callable[[], Awaitable[redis.Redis]],
        prefix: str = "ratelimit",
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._client_factory = client_factory
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def hit(self, key: str) -> RateLimitDecision:
        """Record a request for ``key`` if the shared window has room."""
        client = await self._client_factory()
        redis_key = self._key(key)
        now = time.time()
        member = f"{now}:{uuid.uuid4().hex}"

        async with client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(redis_key, 0, now - self.window_seconds)
            pipe.zadd(redis_key, {member: now})
            pipe.zcard(redis_key)
            pipe.expire(redis_key, int(self.window_seconds) + 1)
            results: list[Any] = await pipe.execute()

        count = int(results[2])
        if count <= self.max_requests:
            return RateLimitDecision(True, self.max_requests - count, 0.0)

        await client.zrem(redis_key, member)
        oldest = await client.zrange(redis_key, 0, 0, withscores=True)
        retry_after = self.window_seconds
        if oldest:
            retry_after = oldest[0][1] + self.window_seconds - now
        return RateLimitDecision(False, 0, max(retry_after, 0.0))

    async def allow_request(self, key: str) -> bool:
        return (await self.hit(key)).allowed
