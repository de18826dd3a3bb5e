"""Counter stores for the rate limiter.

A store owns one fixed-window counter per rate limit key and performs the
check-and-increment for it. The in-memory store is per process; the Redis
store shares counters across instances behind the same interface.
"""

import asyncio
import math
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import redis.asyncio as aioredis

from dashboard.app.core.config import Settings
from dashboard.app.core.logging import get_logger
from dashboard.app.exceptions import RateLimitConfigError, RateLimitStoreError
from dashboard.app.middleware.rate_limit.models import RateLimitEntry, RateLimitResult

logger = get_logger(__name__)

Clock = Callable[[], float]


def _validate_limits(limit: int, window_ms: int) -> None:
    if limit <= 0:
        raise RateLimitConfigError(f"limit must be positive, got {limit}")
    if window_ms <= 0:
        raise RateLimitConfigError(f"window_ms must be positive, got {window_ms}")


def build_result(
    count: int,
    window_start: float,
    limit: int,
    window_ms: int,
    now: float,
) -> RateLimitResult:
    """Turn a post-increment counter into a RateLimitResult.

    All times are epoch milliseconds.
    """
    reset_at = window_start + window_ms
    reset = math.ceil(reset_at / 1000)

    if count > limit:
        return RateLimitResult(
            success=False,
            limit=limit,
            remaining=0,
            reset=reset,
            retry_after=math.ceil((reset_at - now) / 1000),
        )

    return RateLimitResult(
        success=True,
        limit=limit,
        remaining=max(0, limit - count),
        reset=reset,
    )


class RateLimitStore(ABC):
    """Abstract base class for rate limit counter stores."""

    @abstractmethod
    async def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        """Count one request against key and report whether it fits.

        Args:
            key: Rate limit key
            limit: Maximum requests per window
            window_ms: Window length in milliseconds

        Returns:
            RateLimitResult for this request

        Raises:
            RateLimitConfigError: If limit or window_ms is not positive
        """
        pass

    @abstractmethod
    async def get(self, key: str) -> int:
        """Return the request count of the current window without counting."""
        pass

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Forget the counter for key."""
        pass

    async def start(self) -> None:
        """Start background work, if the backend has any."""

    async def stop(self) -> None:
        """Stop background work and release connections."""


class InMemoryRateLimitStore(RateLimitStore):
    """In-memory fixed-window store.

    Suitable for single-instance deployments: with several processes each
    one counts independently, so the effective limit is multiplied by the
    number of instances.

    Memory is bounded by a periodic sweep that drops entries older than
    max_entry_age_ms (or older than their own window, if that is longer).
    """

    DEFAULT_MAX_ENTRY_AGE_MS = 60 * 60 * 1000
    DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0

    def __init__(
        self,
        max_entry_age_ms: int = DEFAULT_MAX_ENTRY_AGE_MS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Clock = time.time,
    ):
        """Initialize the store.

        Args:
            max_entry_age_ms: Age after which the sweep evicts an entry
            sweep_interval_seconds: Time between sweeps of the background task
            clock: Returns the current time in epoch seconds
        """
        if max_entry_age_ms <= 0:
            raise RateLimitConfigError("max_entry_age_ms must be positive")
        if sweep_interval_seconds <= 0:
            raise RateLimitConfigError("sweep_interval_seconds must be positive")

        self._max_entry_age_ms = max_entry_age_ms
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock

        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = asyncio.Lock()

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def running(self) -> bool:
        return self._task is not None

    def _now_ms(self) -> float:
        return self._clock() * 1000

    async def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        """Check and increment the counter for key."""
        _validate_limits(limit, window_ms)

        async with self._lock:
            now = self._now_ms()
            entry = self._entries.get(key)

            # Start a new window if none exists or the old one ran out
            if entry is None or now - entry.window_start >= window_ms:
                entry = RateLimitEntry(count=1, window_start=now, window_ms=window_ms)
                self._entries[key] = entry
            else:
                entry.count += 1
                entry.window_ms = window_ms

            return build_result(entry.count, entry.window_start, limit, window_ms, now)

    async def get(self, key: str) -> int:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._now_ms() - entry.window_start >= entry.window_ms:
                return 0
            return entry.count

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def sweep(self) -> int:
        """Remove entries that outlived the retention bound.

        An entry is kept for at least max_entry_age_ms and at least one
        full window of its own, even when that window already elapsed.

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            now = self._now_ms()
            expired = [
                key for key, entry in self._entries.items()
                if now - entry.window_start > max(self._max_entry_age_ms, entry.window_ms)
            ]
            for key in expired:
                del self._entries[key]
            remaining = len(self._entries)

        if expired:
            logger.debug(f"Rate limit sweep removed {len(expired)} entries, {remaining} left")
        return len(expired)

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._task is not None:
            logger.debug("Rate limit sweep already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_sweeps())
        logger.info(f"Started rate limit sweep (interval: {self._sweep_interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep task.

        Stored entries are left in place.
        """
        if self._task is None:
            return

        self._stop_event.set()

        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Rate limit sweep did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info("Stopped rate limit sweep")

    async def _run_sweeps(self) -> None:
        """Background task that evicts stale entries until stopped."""
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self._sweep_interval
                )
            except asyncio.TimeoutError:
                # Interval elapsed without a stop request
                pass
            else:
                break

            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error during rate limit sweep: {e}")


# Fixed window kept in a hash per key. Check-and-increment happens inside
# one script so concurrent instances never read the same pre-increment count.
# The key expires with its window, which replaces the in-memory sweep.
FIXED_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local window_ms = tonumber(ARGV[1])
    local now = tonumber(ARGV[2])

    local state = redis.call('HMGET', key, 'count', 'window_start')
    local count = tonumber(state[1])
    local window_start = tonumber(state[2])

    if count == nil or window_start == nil or now - window_start >= window_ms then
        redis.call('HSET', key, 'count', 1, 'window_start', now)
        redis.call('PEXPIRE', key, window_ms)
        return {1, now}
    end

    count = redis.call('HINCRBY', key, 'count', 1)
    return {count, window_start}
"""


class RedisRateLimitStore(RateLimitStore):
    """Redis-backed fixed-window store shared by every instance.

    Counts are exact across processes because the check-and-increment
    runs as a single Lua script.
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        clock: Clock = time.time,
    ):
        """Initialize Redis store.

        Args:
            redis_client: Optional Redis client instance
            redis_url: Redis connection URL, used when no client is given
            clock: Returns the current time in epoch seconds
        """
        self._redis = redis_client
        # Injected clients belong to the caller and are not closed on stop
        self._owns_client = redis_client is None
        self._redis_url = redis_url or "redis://localhost:6379/0"
        self._clock = clock

    async def _get_redis(self) -> Any:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    async def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        _validate_limits(limit, window_ms)

        client = await self._get_redis()
        now = int(self._clock() * 1000)
        reply = await client.eval(FIXED_WINDOW_SCRIPT, 1, key, window_ms, now)

        try:
            count, window_start = int(reply[0]), int(reply[1])
        except (TypeError, ValueError, IndexError) as e:
            raise RateLimitStoreError(
                f"Unexpected reply from rate limit script: {reply!r}", backend="redis"
            ) from e

        return build_result(count, window_start, limit, window_ms, now)

    async def get(self, key: str) -> int:
        client = await self._get_redis()
        count = await client.hget(key, "count")
        return int(count) if count is not None else 0

    async def reset(self, key: str) -> None:
        client = await self._get_redis()
        await client.delete(key)

    async def stop(self) -> None:
        """Close the Redis connection if this store opened it."""
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None


def create_rate_limit_store(settings: Settings) -> RateLimitStore:
    """Build the store selected by settings.

    Redis when redis_enabled is set, otherwise the in-memory store.
    """
    if settings.redis_enabled:
        logger.info("Using Redis rate limit store")
        return RedisRateLimitStore(redis_url=settings.redis_url)

    logger.debug("Using in-memory rate limit store")
    return InMemoryRateLimitStore(
        max_entry_age_ms=settings.rate_limit_max_entry_age_ms,
        sweep_interval_seconds=settings.rate_limit_sweep_interval_seconds,
    )
