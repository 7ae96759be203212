"""Test fixtures: a fully wired Gateway on in-memory SQLite.

Learn: Testing pattern for async SQLAlchemy + FastAPI:

1. Each test gets its own in-memory SQLite engine (aiosqlite). StaticPool
   keeps the single connection alive so every session sees the same DB.
2. The Gateway is built by hand from test settings, with memory-backed
   challenges and rate limits and a chat backend on httpx.MockTransport.
3. create_app(gateway=...) uses it as-is, so the HTTP client and the
   direct service calls in a test share one state.

Nothing is shared between tests, so there is nothing to roll back.
"""

import json

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from keygate.auth.jwt import TokenIssuer
from keygate.auth.webauthn import WebAuthnVerifier
from keygate.config import RateLimitRule, Settings
from keygate.db.engine import build_session_factory
from keygate.db.models import Base
from keygate.gateway import Gateway
from keygate.main import create_app
from keygate.services.challenge_store import MemoryChallengeStore
from keygate.services.chat_backend import ChatBackend
from keygate.services.rate_limiter import MemoryRateLimiter
from soft_authenticator import SoftAuthenticator

CEREMONY_URL = "/api/v1/auth/rpc"
API_URL = "/api/v1/rpc"
TEST_ORIGIN = "http://localhost:5173"


def echo_chat(request: httpx.Request) -> httpx.Response:
    """Stand-in prediction API: echoes the question and variables back."""
    body = json.loads(request.content)
    return httpx.Response(
        200,
        json={
            "text": f"echo: {body['question']}",
            "variables": body["variables"],
            "path": request.url.path,
        },
    )


@pytest.fixture()
def test_settings():
    settings = Settings(
        environment="test",
        database_url="sqlite+aiosqlite://",
        rp_id="localhost",
        origin=TEST_ORIGIN,
        jwt_secret="test-secret-that-is-at-least-32-bytes-long",
        chat_backend_url="http://chat.test",
        cors_origins=[TEST_ORIGIN],
    )
    # A wide window so timing never lets a test slip into the next one
    settings.rate_limits["chat.send"] = RateLimitRule(limit=5, window_ms=60_000)
    return settings


@pytest_asyncio.fixture()
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def gateway(test_settings, engine):
    gw = Gateway(
        settings=test_settings,
        engine=engine,
        session_factory=build_session_factory(engine),
        challenges=MemoryChallengeStore(test_settings.challenge_ttl_seconds),
        rate_limiter=MemoryRateLimiter(test_settings.rate_limits),
        tokens=TokenIssuer.from_settings(test_settings),
        verifier=WebAuthnVerifier.from_settings(test_settings),
        chat=ChatBackend(
            test_settings.chat_backend_url,
            transport=httpx.MockTransport(echo_chat),
        ),
    )
    yield gw
    await gw.close()


@pytest_asyncio.fixture()
async def client(gateway):
    """HTTP client against an app wired to the test gateway."""
    app = create_app(gateway=gateway)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def authenticator():
    return SoftAuthenticator(rp_id="localhost", origin=TEST_ORIGIN)


@pytest.fixture()
def register_user(client):
    """Run a full registration ceremony over HTTP. Returns the finish payload."""

    async def _register(authenticator: SoftAuthenticator, hint: str = "alice") -> dict:
        r = await client.post(CEREMONY_URL, json={"op": "register.start", "userHint": hint})
        assert r.status_code == 200, r.text
        start = r.json()
        r = await client.post(
            CEREMONY_URL,
            json={
                "op": "register.finish",
                "userId": start["userId"],
                "attestationResponse": authenticator.create(start["publicKey"]),
            },
        )
        assert r.status_code == 200, r.text
        return r.json()

    return _register


@pytest.fixture()
def login(client):
    """Run a full authentication ceremony over HTTP. Returns the raw response."""

    async def _login(authenticator: SoftAuthenticator, **get_kwargs) -> httpx.Response:
        r = await client.post(CEREMONY_URL, json={"op": "authenticate.start"})
        assert r.status_code == 200, r.text
        start = r.json()
        return await client.post(
            CEREMONY_URL,
            json={
                "op": "authenticate.finish",
                "nonce": start["nonce"],
                "assertionResponse": authenticator.get(start["publicKey"], **get_kwargs),
            },
        )

    return _login


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
