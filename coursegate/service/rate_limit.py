from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from coursegate.logging import get_logger
from coursegate.storage.models import TokenBucket

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    capacity: int
    window_ms: int

    def __post_init__(self) -> None:
        if self.capacity <= 0:
            raise ValueError("rate limit capacity must be positive")
        if self.window_ms <= 0:
            raise ValueError("rate limit window must be positive")

    @property
    def refill_per_ms(self) -> float:
        return self.capacity / self.window_ms


DEFAULT_POLICY = RateLimitPolicy(capacity=60, window_ms=60_000)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: Optional[int] = None
    remaining: int = 0


class RateLimiter(Protocol):
    async def consume(
        self, key: str, policy: RateLimitPolicy | None = None
    ) -> RateLimitDecision:
        ...


def refill(bucket: TokenBucket, now_ms: float, policy: RateLimitPolicy) -> None:
    """Top up ``bucket`` for the time elapsed since its last refill."""
    elapsed = max(0.0, now_ms - bucket.last_refill_at)
    bucket.tokens = min(float(policy.capacity), bucket.tokens + elapsed * policy.refill_per_ms)
    bucket.last_refill_at = now_ms


def take_token(bucket: TokenBucket, now_ms: float, policy: RateLimitPolicy) -> RateLimitDecision:
    """Refill then try to consume one unit. Callers hold the bucket's lock."""
    refill(bucket, now_ms, policy)
    if bucket.tokens >= 1:
        bucket.tokens -= 1
        return RateLimitDecision(allowed=True, remaining=int(bucket.tokens))
    return RateLimitDecision(
        allowed=False,
        retry_after_seconds=retry_after_seconds(bucket.tokens, policy),
        remaining=0,
    )


def retry_after_seconds(tokens: float, policy: RateLimitPolicy) -> int:
    wait_ms = (1 - tokens) * policy.window_ms / policy.capacity
    return max(1, math.ceil(wait_ms / 1000))


async def consume_all(
    limiter: RateLimiter,
    keys: Iterable[str],
    policy: RateLimitPolicy | None = None,
) -> RateLimitDecision:
    """Consume one unit from every key.

    Every key is evaluated even after a denial. The request is denied if any
    key is, and the longest wait across denied keys is reported.
    """
    denied_wait: Optional[int] = None
    remaining: Optional[int] = None
    for key in keys:
        decision = await limiter.consume(key, policy)
        if decision.allowed:
            remaining = decision.remaining if remaining is None else min(remaining, decision.remaining)
            continue
        logger.info("rate_limit_denied", key=key, retry_after=decision.retry_after_seconds)
        wait = decision.retry_after_seconds or 1
        denied_wait = wait if denied_wait is None else max(denied_wait, wait)
    if denied_wait is not None:
        return RateLimitDecision(allowed=False, retry_after_seconds=denied_wait, remaining=0)
    return RateLimitDecision(allowed=True, remaining=remaining or 0)
