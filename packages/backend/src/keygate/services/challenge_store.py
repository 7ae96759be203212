"""Challenge store — short-lived, single-use WebAuthn challenges.

Learn: A challenge is the random value the authenticator signs over. It
must be used at most once and only within its TTL, otherwise a captured
response could be replayed. Two backends share one contract:

- MemoryChallengeStore: process-local dict. issue/consume run without any
  await between read and write, so on the event loop each call is atomic
  and concurrent consumers of one key race to exactly one winner.
- RedisChallengeStore: SET ... EX / GETDEL, for deployments with several
  workers. Redis expires entries itself.

Context keys are namespaced by ceremony: "reg:<user id>" and "auth:<nonce>".
Issuing again for the same key replaces the previous challenge; only the
latest ceremony attempt per key can finish.
"""

import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url

from keygate.errors import GatewayUnavailable

logger = structlog.get_logger()

CHALLENGE_BYTES = 32


def registration_key(user_id: str) -> str:
    return f"reg:{user_id}"


def authentication_key(nonce: str) -> str:
    return f"auth:{nonce}"


class ChallengeStore(ABC):
    """Single-use challenge storage with a fixed TTL."""

    def __init__(self, ttl_seconds: int):
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def new_challenge() -> bytes:
        return secrets.token_bytes(CHALLENGE_BYTES)

    @abstractmethod
    async def issue(self, context_key: str) -> bytes:
        """Generate, store, and return a fresh challenge for context_key."""

    @abstractmethod
    async def consume(self, context_key: str) -> Optional[bytes]:
        """Atomically read and delete. None if absent, used, or expired."""

    async def purge_expired(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        return 0

    async def close(self) -> None:
        pass


@dataclass
class _Entry:
    value: bytes
    created_at: float
    expires_at: float


class MemoryChallengeStore(ChallengeStore):
    """Process-local challenge store."""

    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.monotonic):
        super().__init__(ttl_seconds)
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def issue(self, context_key: str) -> bytes:
        now = self._clock()
        challenge = self.new_challenge()
        self._entries[context_key] = _Entry(
            value=challenge, created_at=now, expires_at=now + self.ttl_seconds
        )
        return challenge

    async def consume(self, context_key: str) -> Optional[bytes]:
        # pop() is the single atomic step: whoever pops first wins
        entry = self._entries.pop(context_key, None)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            logger.info("keygate.challenge.expired", context_key=context_key)
            return None
        return entry.value

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)


class RedisChallengeStore(ChallengeStore):
    """Redis-backed challenge store (values stored base64url-encoded)."""

    def __init__(self, redis: aioredis.Redis, ttl_seconds: int, prefix: str = "keygate:challenge:"):
        super().__init__(ttl_seconds)
        self.redis = redis
        self.prefix = prefix

    async def issue(self, context_key: str) -> bytes:
        challenge = self.new_challenge()
        try:
            await self.redis.set(
                self.prefix + context_key,
                bytes_to_base64url(challenge),
                ex=self.ttl_seconds,
            )
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error("keygate.challenges.unreachable", error=str(e))
            raise GatewayUnavailable("Challenge store unreachable") from e
        return challenge

    async def consume(self, context_key: str) -> Optional[bytes]:
        try:
            value = await self.redis.getdel(self.prefix + context_key)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error("keygate.challenges.unreachable", error=str(e))
            raise GatewayUnavailable("Challenge store unreachable") from e
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode()
        return base64url_to_bytes(value)
