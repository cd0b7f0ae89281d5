"""
Forwarding Helper Tests (Unit)
==============================

WHAT: Backoff, dedupe keys, currency conversion, status mapping and the
      token bucket used around outbound platform calls.
WHY: These decide whether a purchase is sent once, retried, or dropped.

REFERENCES:
- backend/attribution_engine/services/forwarding.py
- backend/attribution_engine/services/platforms/base.py
- backend/attribution_engine/services/rate_limiter.py
"""

import asyncio
import hashlib
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest

from attribution_engine.exceptions import PermanentForwardingError, ReauthRequired, TransientForwardingError
from attribution_engine.services.forwarding import BACKOFF_CAP_SECONDS, backoff_delay, build_dedupe_key
from attribution_engine.services.platforms.base import minor_to_major, parse_retry_after, raise_for_platform_status
from attribution_engine.services.rate_limiter import AsyncTokenBucket, ForwardingLimits


class TestDedupeKey:
    def test_is_sha256_of_order_and_platform(self):
        expected = hashlib.sha256(b"1001:meta").hexdigest()
        assert build_dedupe_key("1001", "meta") == expected

    def test_differs_per_platform(self):
        assert build_dedupe_key("1001", "meta") != build_dedupe_key("1001", "ga4")


class TestBackoff:
    def test_exponential_without_jitter(self):
        assert [backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_jitter_stretches_delay(self):
        assert backoff_delay(2, jitter=0.5) == 3.0

    def test_capped(self):
        assert backoff_delay(10, jitter=0.9) == BACKOFF_CAP_SECONDS

    def test_retry_after_wins_but_is_capped(self):
        assert backoff_delay(1, retry_after=7) == 7.0
        assert backoff_delay(1, retry_after=600) == BACKOFF_CAP_SECONDS


class TestCurrency:
    @pytest.mark.parametrize(
        "amount,currency,expected",
        [
            (10000, "USD", Decimal("100.00")),
            (1999, "eur", Decimal("19.99")),
            (1500, "JPY", Decimal("1500")),
            (12345, "KWD", Decimal("12.345")),
        ],
    )
    def test_minor_to_major(self, amount, currency, expected):
        assert minor_to_major(amount, currency) == expected


class TestStatusMapping:
    def test_retry_after_seconds(self):
        assert parse_retry_after("12") == 12.0
        assert parse_retry_after(None) is None
        assert parse_retry_after("not a date") is None

    def test_2xx_passes(self):
        raise_for_platform_status("meta", httpx.Response(200, json={"events_received": 1}))

    def test_429_is_transient_with_retry_after(self):
        response = httpx.Response(429, headers={"Retry-After": "5"}, json={"error": {"message": "slow down"}})
        with pytest.raises(TransientForwardingError) as excinfo:
            raise_for_platform_status("meta", response)
        assert excinfo.value.retry_after == 5.0
        assert "slow down" in excinfo.value.message

    def test_5xx_is_transient(self):
        with pytest.raises(TransientForwardingError):
            raise_for_platform_status("ga4", httpx.Response(503, text="unavailable"))

    def test_401_is_permanent(self):
        with pytest.raises(PermanentForwardingError) as excinfo:
            raise_for_platform_status("meta", httpx.Response(401, json={"error": {"message": "bad token"}}))
        assert excinfo.value.status_code == 401
        assert not isinstance(excinfo.value, TransientForwardingError)

    def test_reauth_is_permanent(self):
        assert issubclass(ReauthRequired, PermanentForwardingError)


class TestTokenBucket:
    def test_burst_then_waits_for_refill(self):
        now = [0.0]
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            now[0] += seconds

        async def run():
            bucket = AsyncTokenBucket(capacity=2, refill_per_sec=4.0, clock=lambda: now[0], sleep=fake_sleep)
            return [await bucket.acquire() for _ in range(3)]

        waits = asyncio.run(run())

        assert waits[:2] == [0.0, 0.0]
        assert waits[2] == pytest.approx(0.25)
        assert sleeps == [pytest.approx(0.25)]

    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            AsyncTokenBucket(capacity=1, refill_per_sec=0)


class TestForwardingLimits:
    def test_platform_concurrency_is_bounded(self):
        limits = ForwardingLimits(platform_concurrency=2, rate_per_second=1000, burst=1000)
        in_flight = []
        peak = [0]

        async def send(tenant):
            async with limits.slot(tenant, "meta"):
                in_flight.append(tenant)
                peak[0] = max(peak[0], len(in_flight))
                await asyncio.sleep(0.01)
                in_flight.remove(tenant)

        async def run():
            await asyncio.gather(*[send(f"tenant-{i % 3}") for i in range(6)])

        asyncio.run(run())
        assert peak[0] == 2

    def test_buckets_are_per_tenant_and_platform(self):
        limits = ForwardingLimits()
        assert limits.bucket("a", "meta") is limits.bucket("a", "meta")
        assert limits.bucket("a", "meta") is not limits.bucket("b", "meta")
        assert limits.bucket("a", "meta") is not limits.bucket("a", "ga4")

    def test_bucket_follows_tenant_rate(self):
        limits = ForwardingLimits(rate_per_second=5.0, burst=10)

        bucket = limits.bucket("a", "meta")
        assert (bucket.refill_per_sec, bucket.capacity) == (5.0, 10)

        same = limits.bucket("a", "meta", rate_per_second=1.0, burst=2)
        assert same is bucket
        assert (bucket.refill_per_sec, bucket.capacity) == (1.0, 2)
        assert bucket.tokens == 2.0

    def test_from_settings(self):
        settings = SimpleNamespace(
            FORWARD_PLATFORM_CONCURRENCY=7,
            FORWARD_RATE_LIMIT_PER_SECOND=2.5,
            FORWARD_RATE_LIMIT_BURST=4,
        )
        limits = ForwardingLimits.from_settings(settings)
        assert (limits.platform_concurrency, limits.rate_per_second, limits.burst) == (7, 2.5, 4)
