"""Tests for token-bucket rate limiting."""

import pytest

from coursegate.service.rate_limit import (
    RateLimitPolicy,
    consume_all,
    retry_after_seconds,
)
from coursegate.storage.memory import MemoryRateLimiter

POLICY = RateLimitPolicy(capacity=5, window_ms=60_000)


@pytest.fixture
def limiter(clock):
    return MemoryRateLimiter(default_policy=POLICY, clock=clock.seconds)


class TestPolicy:
    @pytest.mark.parametrize("capacity,window_ms", [(0, 1000), (-1, 1000), (5, 0), (5, -10)])
    def test_non_positive_values_rejected(self, capacity, window_ms):
        with pytest.raises(ValueError):
            RateLimitPolicy(capacity=capacity, window_ms=window_ms)

    def test_refill_rate(self):
        assert POLICY.refill_per_ms == pytest.approx(5 / 60_000)

    def test_retry_after_is_at_least_one_second(self):
        fast = RateLimitPolicy(capacity=1000, window_ms=1000)
        assert retry_after_seconds(0.999, fast) == 1

    def test_retry_after_rounds_up(self):
        # One token per 12 seconds; an empty bucket waits the full interval
        assert retry_after_seconds(0.0, POLICY) == 12
        assert retry_after_seconds(0.5, POLICY) == 6


class TestMemoryRateLimiter:
    @pytest.mark.asyncio
    async def test_capacity_requests_pass_then_deny(self, limiter):
        for expected_remaining in range(POLICY.capacity - 1, -1, -1):
            decision = await limiter.consume("ip:1.2.3.4")
            assert decision.allowed
            assert decision.remaining == expected_remaining

        denied = await limiter.consume("ip:1.2.3.4")
        assert not denied.allowed
        assert denied.retry_after_seconds >= 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, limiter):
        for _ in range(POLICY.capacity):
            await limiter.consume("user:a")
        assert not (await limiter.consume("user:a")).allowed
        assert (await limiter.consume("user:b")).allowed

    @pytest.mark.asyncio
    async def test_partial_refill(self, limiter, clock):
        for _ in range(POLICY.capacity):
            await limiter.consume("k")
        assert not (await limiter.consume("k")).allowed

        clock.advance(13)
        assert (await limiter.consume("k")).allowed
        assert not (await limiter.consume("k")).allowed

    @pytest.mark.asyncio
    async def test_full_window_refills_to_capacity_only(self, limiter, clock):
        for _ in range(POLICY.capacity):
            await limiter.consume("k")

        clock.advance(60 * 10)

        allowed = 0
        while (await limiter.consume("k")).allowed:
            allowed += 1
        assert allowed == POLICY.capacity

    @pytest.mark.asyncio
    async def test_explicit_policy_overrides_default(self, limiter):
        strict = RateLimitPolicy(capacity=1, window_ms=60_000)
        assert (await limiter.consume("login", strict)).allowed
        denied = await limiter.consume("login", strict)
        assert not denied.allowed
        assert denied.retry_after_seconds == 60

    @pytest.mark.asyncio
    async def test_idle_buckets_are_evicted(self, limiter, clock):
        await limiter.consume("a")
        await limiter.consume("b")
        assert len(limiter) == 2

        clock.advance(61)
        await limiter.consume("c")

        assert len(limiter) == 1

    @pytest.mark.asyncio
    async def test_key_cap_drops_least_recently_used(self, clock):
        limiter = MemoryRateLimiter(default_policy=POLICY, max_keys=3, clock=clock.seconds)
        for key in ("a", "b", "c"):
            for _ in range(POLICY.capacity):
                await limiter.consume(key)
        # Refresh "a" so "b" becomes the oldest
        await limiter.consume("a")
        await limiter.consume("d")

        assert len(limiter) == 3
        # "b" was dropped and starts over with a full bucket
        assert (await limiter.consume("b")).allowed


class TestConsumeAll:
    @pytest.mark.asyncio
    async def test_allowed_when_every_key_allows(self, limiter):
        decision = await consume_all(limiter, ["ip:x", "user:y"])
        assert decision.allowed
        assert decision.remaining == POLICY.capacity - 1

    @pytest.mark.asyncio
    async def test_denied_with_longest_wait(self, limiter):
        slow = RateLimitPolicy(capacity=1, window_ms=120_000)
        await limiter.consume("user:y", slow)
        # "ip:x" is untouched; "user:y" is empty under the slow policy
        decision = await consume_all(limiter, ["ip:x", "user:y"], slow)
        assert not decision.allowed
        assert decision.retry_after_seconds == 120

    @pytest.mark.asyncio
    async def test_every_key_is_charged_even_after_denial(self, limiter):
        single = RateLimitPolicy(capacity=1, window_ms=60_000)
        await limiter.consume("first", single)

        decision = await consume_all(limiter, ["first", "second"], single)

        assert not decision.allowed
        assert not (await limiter.consume("second", single)).allowed


class TestDefaultPolicy:
    @pytest.mark.asyncio
    async def test_sixty_first_request_within_a_second_is_rejected(self, clock):
        limiter = MemoryRateLimiter(clock=clock.seconds)
        for _ in range(60):
            assert (await limiter.consume("endpoint:GET:/v1/auth/me")).allowed
            clock.advance(0.01)

        denied = await limiter.consume("endpoint:GET:/v1/auth/me")

        assert not denied.allowed
        assert denied.retry_after_seconds >= 1
