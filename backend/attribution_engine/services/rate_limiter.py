"""Concurrency and rate limits for outbound platform calls.

WHAT:
    - `AsyncTokenBucket`: token bucket with async acquire
    - `ForwardingLimits`: one semaphore per platform (bounded pool of in-flight
      sends) and one bucket per (tenant, platform)

WHY:
    Platform quotas are per account; one busy tenant must not starve the
    others or trip a platform-wide 429 storm.

NOTE:
    Create one `ForwardingLimits` per process and event loop (arq worker
    `startup`, FastAPI startup) and hand it to every `AttributionService`;
    limits built per job or per request cap nothing. asyncio primitives must
    not be shared across loops.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class AsyncTokenBucket:
    """Simple token bucket rate limiter.

    WHAT:
        Guard outgoing requests to honor a requests-per-second quota with a
        bounded burst.
    """

    def __init__(
        self,
        capacity: int = 10,
        refill_per_sec: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if refill_per_sec <= 0:
            raise ValueError("refill_per_sec must be positive")
        self.capacity = capacity
        self.tokens = float(capacity)
        self.refill_per_sec = refill_per_sec
        self._clock = clock
        self._sleep = sleep
        self.last = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self.last
        self.last = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_per_sec)

    async def acquire(self) -> float:
        """Take one token, waiting if needed. Returns seconds waited."""
        waited = 0.0
        async with self._lock:
            self._refill()
            if self.tokens < 1:
                # Sleep until we have at least 1 token
                missing = 1 - self.tokens
                sleep_s = missing / self.refill_per_sec
                await self._sleep(max(0.0, sleep_s))
                waited = sleep_s
                self._refill()
                self.tokens = max(self.tokens, 1.0)
            # Consume one token
            self.tokens -= 1
        return waited


class ForwardingLimits:
    """
    Per-platform concurrency caps and per-tenant rate limits.

    Usage:
        limits = ForwardingLimits.from_settings(get_settings())
        async with limits.slot(tenant_id, "meta", rate_per_second=config.rate_limit_per_second):
            await client.send_purchase(...)

    The semaphores are process-wide. Bucket rates default to the constructor
    values and follow the tenant's configured rate when one is passed.
    """

    def __init__(self, platform_concurrency: int = 4, rate_per_second: float = 5.0, burst: int = 10):
        self.platform_concurrency = platform_concurrency
        self.rate_per_second = rate_per_second
        self.burst = burst
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._buckets: Dict[Tuple[str, str], AsyncTokenBucket] = {}

    @classmethod
    def from_settings(cls, settings) -> "ForwardingLimits":
        return cls(
            platform_concurrency=settings.FORWARD_PLATFORM_CONCURRENCY,
            rate_per_second=settings.FORWARD_RATE_LIMIT_PER_SECOND,
            burst=settings.FORWARD_RATE_LIMIT_BURST,
        )

    def semaphore(self, platform: str) -> asyncio.Semaphore:
        if platform not in self._semaphores:
            self._semaphores[platform] = asyncio.Semaphore(self.platform_concurrency)
        return self._semaphores[platform]

    def bucket(
        self,
        tenant_id: str,
        platform: str,
        rate_per_second: Optional[float] = None,
        burst: Optional[int] = None,
    ) -> AsyncTokenBucket:
        key = (tenant_id, platform)
        rate = rate_per_second or self.rate_per_second
        capacity = burst or self.burst
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._buckets[key] = AsyncTokenBucket(capacity=capacity, refill_per_sec=rate)
        elif (bucket.refill_per_sec, bucket.capacity) != (rate, capacity):
            # Tenant config changed; keep the bucket (and its spent tokens)
            bucket.refill_per_sec = rate
            bucket.capacity = capacity
            bucket.tokens = min(bucket.tokens, float(capacity))
        return bucket

    def slot(
        self,
        tenant_id: str,
        platform: str,
        rate_per_second: Optional[float] = None,
        burst: Optional[int] = None,
    ) -> "_Slot":
        return _Slot(self, tenant_id, platform, rate_per_second, burst)


class _Slot:
    """Async context: platform semaphore held, tenant token consumed."""

    def __init__(
        self,
        limits: ForwardingLimits,
        tenant_id: str,
        platform: str,
        rate_per_second: Optional[float] = None,
        burst: Optional[int] = None,
    ):
        self.limits = limits
        self.tenant_id = tenant_id
        self.platform = platform
        self.rate_per_second = rate_per_second
        self.burst = burst
        self._semaphore: Optional[asyncio.Semaphore] = None

    async def __aenter__(self) -> "_Slot":
        self._semaphore = self.limits.semaphore(self.platform)
        await self._semaphore.acquire()
        try:
            bucket = self.limits.bucket(self.tenant_id, self.platform, self.rate_per_second, self.burst)
            waited = await bucket.acquire()
        except BaseException:
            self._semaphore.release()
            raise
        if waited:
            logger.debug(
                f"[FORWARD] Rate limited {self.platform} for {waited:.2f}s",
                extra={"tenant_id": self.tenant_id, "platform": self.platform},
            )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._semaphore is not None:
            self._semaphore.release()
