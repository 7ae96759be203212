"""Gateway — the service container shared by every request.

Learn: Challenge and rate-limit state live in injected services with a
startup/shutdown lifecycle instead of module globals. build_gateway()
runs in the FastAPI lifespan (or the CLI), Gateway.close() at shutdown.
Tests build a Gateway by hand and pass it to create_app().

ExpirySweeper is a background loop that purges expired challenges and
rate buckets so the in-memory backends do not grow without bound.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from keygate.auth.jwt import TokenIssuer
from keygate.auth.webauthn import WebAuthnVerifier
from keygate.config import Settings
from keygate.db.engine import build_engine, build_session_factory
from keygate.services.ceremony import WebAuthnCeremony
from keygate.services.challenge_store import (
    ChallengeStore,
    MemoryChallengeStore,
    RedisChallengeStore,
)
from keygate.services.chat_backend import ChatBackend
from keygate.services.rate_limiter import (
    MemoryRateLimiter,
    RateLimiter,
    RedisRateLimiter,
)

logger = structlog.get_logger()


@dataclass
class Gateway:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    challenges: ChallengeStore
    rate_limiter: RateLimiter
    tokens: TokenIssuer
    verifier: WebAuthnVerifier
    chat: ChatBackend
    redis: Optional[aioredis.Redis] = None

    def ceremony(self) -> WebAuthnCeremony:
        return WebAuthnCeremony(
            challenges=self.challenges,
            session_factory=self.session_factory,
            tokens=self.tokens,
            verifier=self.verifier,
            store_timeout=self.settings.store_timeout_seconds,
        )

    async def close(self) -> None:
        await self.chat.close()
        await self.challenges.close()
        if self.redis is not None:
            await self.redis.aclose()
        await self.engine.dispose()
        logger.info("keygate.gateway.closed")


async def build_gateway(settings: Settings) -> Gateway:
    """Wire every service from settings."""
    engine = build_engine(settings)
    redis_client: Optional[aioredis.Redis] = None

    if settings.store_backend == "redis":
        redis_client = aioredis.from_url(
            settings.redis_url,
            socket_timeout=settings.store_timeout_seconds,
            socket_connect_timeout=settings.store_timeout_seconds,
        )
        challenges: ChallengeStore = RedisChallengeStore(
            redis_client, settings.challenge_ttl_seconds
        )
        rate_limiter: RateLimiter = RedisRateLimiter(redis_client, settings.rate_limits)
    else:
        challenges = MemoryChallengeStore(settings.challenge_ttl_seconds)
        rate_limiter = MemoryRateLimiter(settings.rate_limits)

    logger.info(
        "keygate.gateway.built",
        store_backend=settings.store_backend,
        rp_id=settings.rp_id,
    )
    return Gateway(
        settings=settings,
        engine=engine,
        session_factory=build_session_factory(engine),
        challenges=challenges,
        rate_limiter=rate_limiter,
        tokens=TokenIssuer.from_settings(settings),
        verifier=WebAuthnVerifier.from_settings(settings),
        chat=ChatBackend.from_settings(settings),
        redis=redis_client,
    )


class ExpirySweeper:
    """Background loop purging expired challenges and rate buckets."""

    def __init__(self, gateway: Gateway, interval: float = 60.0):
        self.gateway = gateway
        self.interval = interval
        self._running = False

    async def sweep_once(self) -> tuple[int, int]:
        challenges = await self.gateway.challenges.purge_expired()
        buckets = await self.gateway.rate_limiter.purge_expired()
        if challenges or buckets:
            logger.debug(
                "keygate.sweeper.purged", challenges=challenges, buckets=buckets
            )
        return challenges, buckets

    async def run_loop(self) -> None:
        self._running = True
        logger.info("keygate.sweeper.started", interval=self.interval)
        while self._running:
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("keygate.sweeper.error")
            await asyncio.sleep(self.interval)

    def stop(self) -> None:
        """Signal the loop to stop after the current sweep."""
        self._running = False
        logger.info("keygate.sweeper.stopping")
