"""Keygate CLI — operate a gateway from the terminal.

Usage:
    keygate health                                # Ping a running gateway
    keygate rpc authenticate.start                # Call a ceremony op
    keygate rpc chat.send -d '{"flowId": "f1", "message": "hi"}' --token $T
    keygate issue-token 6f1c...                   # Mint a token locally
    keygate verify-token eyJhbGciOi...            # Inspect a token locally
    keygate revoke AbC123...                      # Revoke a credential in the store
    keygate serve                                 # Run the API with uvicorn

health and rpc talk HTTP to KEYGATE_API_URL. The other commands read the
local KEYGATE_* settings and never need the server.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

from keygate import __version__
from keygate.config import Settings

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("KEYGATE_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the gateway."""
    return httpx.AsyncClient(base_url=_api_url(), timeout=30.0)


def _settings() -> Settings:
    # Built per command so the environment at call time applies
    return Settings()


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _fail(message: str) -> None:
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="keygate")
def main():
    """Keygate — passkey authentication gateway."""


# ---------------------------------------------------------------------------
# keygate health
# ---------------------------------------------------------------------------


@main.command()
def health():
    """Check that a running gateway and its dependencies are up."""
    _run(_health_impl())


async def _health_impl():
    try:
        async with _client() as c:
            r = await c.get("/api/v1/health")
    except httpx.HTTPError as e:
        _fail(f"gateway unreachable at {_api_url()}: {e}")
    data = r.json()
    color = "green" if data.get("status") == "healthy" else "yellow"
    click.secho(data.get("status", "unknown"), fg=color, bold=True)
    for key, value in data.items():
        if key != "status":
            click.echo(f"  {key}: {value}")
    if data.get("status") != "healthy":
        sys.exit(1)


# ---------------------------------------------------------------------------
# keygate rpc
# ---------------------------------------------------------------------------


@main.command()
@click.argument("op")
@click.option("--data", "-d", default="{}", help="JSON object with the op's fields")
@click.option("--token", envvar="KEYGATE_TOKEN", help="Bearer token (or KEYGATE_TOKEN)")
def rpc(op: str, data: str, token: Optional[str]):
    """Call OP on a running gateway and print the JSON answer."""
    _run(_rpc_impl(op, data, token))


async def _rpc_impl(op: str, data: str, token: Optional[str]):
    from keygate.dispatcher.operations import CATALOG, Operation, Surface

    try:
        fields = json.loads(data)
    except ValueError as e:
        _fail(f"--data is not valid JSON: {e}")
    if not isinstance(fields, dict):
        _fail("--data must be a JSON object")

    path = "/api/v1/rpc"
    try:
        if CATALOG[Operation(op)].surface == Surface.CEREMONY:
            path = "/api/v1/auth/rpc"
    except ValueError:
        pass  # let the server answer op_unknown

    headers = {"Authorization": f"Bearer {token}"} if token else {}
    try:
        async with _client() as c:
            r = await c.post(path, json={**fields, "op": op}, headers=headers)
    except httpx.HTTPError as e:
        _fail(f"gateway unreachable at {_api_url()}: {e}")

    click.echo(_pretty_json(r.json()))
    if r.status_code >= 400:
        sys.exit(1)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


@main.command("issue-token")
@click.argument("user_id")
@click.option("--ttl", type=int, default=None, help="Lifetime in seconds")
def issue_token(user_id: str, ttl: Optional[int]):
    """Mint a session token for USER_ID with the local secret."""
    from keygate.auth.jwt import TokenIssuer

    click.echo(TokenIssuer.from_settings(_settings()).issue(user_id, ttl_seconds=ttl))


@main.command("verify-token")
@click.argument("token")
def verify_token(token: str):
    """Verify TOKEN with the local secret and print its claims."""
    from keygate.auth.jwt import TokenIssuer
    from keygate.errors import GatewayError

    try:
        claims = TokenIssuer.from_settings(_settings()).verify(token)
    except GatewayError as e:
        _fail(f"{e.kind}: {e.message}")
    click.echo(
        _pretty_json(
            {
                "subject": claims.subject,
                "tokenId": claims.token_id,
                "issuedAt": claims.issued_at.isoformat(),
                "expiresAt": claims.expires_at.isoformat(),
            }
        )
    )


# ---------------------------------------------------------------------------
# keygate revoke
# ---------------------------------------------------------------------------


@main.command()
@click.argument("credential_id")
def revoke(credential_id: str):
    """Revoke CREDENTIAL_ID (base64url) directly in the credential store."""
    _run(_revoke_impl(credential_id))


async def _revoke_impl(credential_id: str):
    from webauthn.helpers import base64url_to_bytes

    from keygate.db.engine import build_engine, build_session_factory, run_unit_of_work
    from keygate.errors import GatewayError
    from keygate.events.store import EventStore
    from keygate.events.types import CREDENTIAL_REVOKED
    from keygate.services.credential_registry import CredentialRegistry

    try:
        raw_id = base64url_to_bytes(credential_id)
    except (ValueError, TypeError):
        _fail("CREDENTIAL_ID is not valid base64url")

    settings = _settings()
    engine = build_engine(settings)

    async def work(db):
        credential = await CredentialRegistry(db).revoke(raw_id)
        if credential is None:
            return None
        await EventStore(db).append(
            stream_id=f"credential:{credential_id}",
            event_type=CREDENTIAL_REVOKED,
            data={"user_id": str(credential.user_id), "by": "operator"},
        )
        return str(credential.user_id)

    try:
        owner = await run_unit_of_work(
            build_session_factory(engine), work, timeout=settings.store_timeout_seconds
        )
    except GatewayError as e:
        _fail(f"{e.kind}: {e.message}")
    finally:
        await engine.dispose()

    if owner is None:
        _fail(f"no credential {credential_id}")
    click.secho(f"Revoked {credential_id} (owner {owner})", fg="green")


# ---------------------------------------------------------------------------
# keygate serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--reload", is_flag=True, help="Restart on code changes")
def serve(reload: bool):
    """Run the API server with uvicorn."""
    import uvicorn

    settings = _settings()
    uvicorn.run(
        "keygate.main:app", host=settings.host, port=settings.port, reload=reload
    )


if __name__ == "__main__":
    main()
