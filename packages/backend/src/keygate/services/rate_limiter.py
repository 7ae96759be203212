"""Rate limiter — fixed-window admission control per (operation, principal).

Learn: Each operation may have a rule {limit, window_ms}. The first request
opens a window; requests are admitted until `limit` is reached inside it;
after that callers get a retry hint equal to the time left in the window.
Operations without a rule are always admitted.

This bounds abuse, it is not a correctness mechanism: buckets live in
process memory (or Redis) and reset on restart. Under concurrency the
limiter may over-admit slightly but never denies while capacity remains.
"""

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from keygate.config import RateLimitRule
from keygate.errors import GatewayUnavailable

logger = structlog.get_logger()


@dataclass(frozen=True)
class Admission:
    """Outcome of one admit() call."""

    allowed: bool
    retry_after_ms: int = 0
    limit: Optional[int] = None
    remaining: Optional[int] = None


ALLOW_UNLIMITED = Admission(allowed=True)


def bucket_key(op: str, principal: str) -> str:
    return f"{op}:{principal}"


class RateLimiter(ABC):
    """Per-operation fixed-window limiter."""

    def __init__(self, rules: dict[str, RateLimitRule]):
        self.rules = dict(rules)

    def rule_for(self, op: str) -> Optional[RateLimitRule]:
        return self.rules.get(op)

    async def admit(self, op: str, principal: str) -> Admission:
        rule = self.rule_for(op)
        if rule is None:
            return ALLOW_UNLIMITED
        return await self._admit(bucket_key(op, principal), rule)

    @abstractmethod
    async def _admit(self, key: str, rule: RateLimitRule) -> Admission:
        ...

    async def purge_expired(self) -> int:
        return 0


@dataclass
class _Bucket:
    count: int
    window_end_ms: float


class MemoryRateLimiter(RateLimiter):
    """Process-local buckets.

    _admit() has no await, so the read-modify-write of a bucket is atomic
    on the event loop.
    """

    def __init__(
        self,
        rules: dict[str, RateLimitRule],
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(rules)
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    async def _admit(self, key: str, rule: RateLimitRule) -> Admission:
        now = self._now_ms()
        bucket = self._buckets.get(key)

        if bucket is None or now >= bucket.window_end_ms:
            self._buckets[key] = _Bucket(count=1, window_end_ms=now + rule.window_ms)
            return Admission(True, limit=rule.limit, remaining=rule.limit - 1)

        if bucket.count < rule.limit:
            bucket.count += 1
            return Admission(True, limit=rule.limit, remaining=rule.limit - bucket.count)

        retry = max(1, math.ceil(bucket.window_end_ms - now))
        return Admission(False, retry_after_ms=retry, limit=rule.limit, remaining=0)

    async def purge_expired(self) -> int:
        now = self._now_ms()
        stale = [k for k, b in self._buckets.items() if now >= b.window_end_ms]
        for key in stale:
            del self._buckets[key]
        return len(stale)


class RedisRateLimiter(RateLimiter):
    """Redis-backed buckets shared by every worker.

    INCR opens or advances the window; PEXPIRE NX stamps the window length
    only on the request that opened it; PTTL gives the time left. All three
    run in one MULTI so a crash cannot leave a counter without an expiry.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        rules: dict[str, RateLimitRule],
        prefix: str = "keygate:rl:",
    ):
        super().__init__(rules)
        self.redis = redis
        self.prefix = prefix

    async def _admit(self, key: str, rule: RateLimitRule) -> Admission:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(self.prefix + key)
                pipe.pexpire(self.prefix + key, rule.window_ms, nx=True)
                pipe.pttl(self.prefix + key)
                count, _, ttl_ms = await pipe.execute()
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error("keygate.rate_limiter.unreachable", error=str(e))
            raise GatewayUnavailable("Rate limiter unreachable") from e

        if count <= rule.limit:
            return Admission(True, limit=rule.limit, remaining=rule.limit - count)

        retry = ttl_ms if ttl_ms and ttl_ms > 0 else rule.window_ms
        return Admission(False, retry_after_ms=int(retry), limit=rule.limit, remaining=0)
