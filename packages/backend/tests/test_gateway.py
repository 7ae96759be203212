"""Gateway wiring and ExpirySweeper tests."""

import pytest

from keygate.config import Settings
from keygate.gateway import ExpirySweeper, build_gateway
from keygate.services.challenge_store import MemoryChallengeStore, RedisChallengeStore
from keygate.services.rate_limiter import MemoryRateLimiter, RedisRateLimiter


@pytest.mark.asyncio
async def test_build_gateway_with_memory_backends():
    settings = Settings(environment="test", database_url="sqlite+aiosqlite://")
    gateway = await build_gateway(settings)
    try:
        assert isinstance(gateway.challenges, MemoryChallengeStore)
        assert isinstance(gateway.rate_limiter, MemoryRateLimiter)
        assert gateway.redis is None
        assert gateway.tokens.ttl_seconds == settings.token_ttl_seconds
        assert gateway.verifier.rp_id == settings.rp_id
    finally:
        await gateway.close()


@pytest.mark.asyncio
async def test_sweeper_purges_expired_state(gateway, test_settings):
    now = [0.0]
    gateway.challenges = MemoryChallengeStore(10, clock=lambda: now[0])
    gateway.rate_limiter = MemoryRateLimiter(test_settings.rate_limits, clock=lambda: now[0])

    await gateway.challenges.issue("reg:a")
    await gateway.challenges.issue("auth:b")
    await gateway.rate_limiter.admit("chat.send", "u1")

    sweeper = ExpirySweeper(gateway, interval=60.0)
    assert await sweeper.sweep_once() == (0, 0)

    now[0] = 120.0
    assert await sweeper.sweep_once() == (2, 1)
    assert len(gateway.challenges) == 0


def test_sweeper_stop_ends_loop(gateway):
    sweeper = ExpirySweeper(gateway)
    sweeper._running = True
    sweeper.stop()
    assert sweeper._running is False


@pytest.mark.asyncio
async def test_build_gateway_with_redis_backends_bounds_socket_waits():
    settings = Settings(
        environment="test",
        database_url="sqlite+aiosqlite://",
        store_backend="redis",
        redis_url="redis://localhost:6379/0",
        store_timeout_seconds=2.5,
    )
    gateway = await build_gateway(settings)
    try:
        assert isinstance(gateway.challenges, RedisChallengeStore)
        assert isinstance(gateway.rate_limiter, RedisRateLimiter)
        kwargs = gateway.redis.connection_pool.connection_kwargs
        assert kwargs["socket_timeout"] == 2.5
        assert kwargs["socket_connect_timeout"] == 2.5
    finally:
        await gateway.close()
