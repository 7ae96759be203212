"""FastAPI application factory.

Learn: App factory pattern: create_app() returns a configured FastAPI
instance. Lifespan builds the Gateway (database engine, challenge store,
rate limiter, ...) at startup and closes it at shutdown. Middleware, CORS,
and routers are all registered here.

Tests pass a ready-made Gateway; the lifespan then leaves it alone and
the test owns its shutdown.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from keygate import __version__
from keygate.api import api_router
from keygate.config import Settings, settings as default_settings
from keygate.dispatcher.rpc import RequestDispatcher
from keygate.gateway import ExpirySweeper, Gateway, build_gateway
from keygate.middleware.request_id import RequestIdMiddleware
from keygate.middleware.security import SecurityHeadersMiddleware

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at
    shutdown.
    """
    settings: Settings = app.state.settings
    logger.info(
        "keygate.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    owns_gateway = app.state.gateway is None
    if owns_gateway:
        app.state.gateway = await build_gateway(settings)
    app.state.dispatcher = RequestDispatcher(app.state.gateway)

    sweeper = ExpirySweeper(app.state.gateway, interval=settings.sweep_interval_seconds)
    sweep_task = asyncio.create_task(sweeper.run_loop())

    yield

    logger.info("keygate.shutdown")

    sweeper.stop()
    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass

    if owns_gateway:
        await app.state.gateway.close()
        app.state.gateway = None


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[Gateway] = None,
) -> FastAPI:
    """Build and return the FastAPI application."""
    settings = settings or (gateway.settings if gateway else default_settings)

    app = FastAPI(
        title="Keygate",
        description="Passkey (WebAuthn) authentication gateway",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.gateway = gateway
    # Ready before the first request even when the lifespan is not run
    app.state.dispatcher = RequestDispatcher(gateway) if gateway else None

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → Security → RequestId → handler

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
        ],
    )

    app.include_router(api_router)

    return app


# Default app instance (used by uvicorn: keygate.main:app)
app = create_app()
