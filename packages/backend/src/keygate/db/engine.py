"""Async SQLAlchemy engine, session factory, and units of work.

Learn: SQLAlchemy 2.0 async mode: create_async_engine for connection pooling,
async_sessionmaker for per-unit sessions. The engine is built by the Gateway
at startup (not at import time) so tests and the CLI can point it elsewhere.

run_unit_of_work() is the only way services touch the durable store:
one session, one transaction, one timeout. Store failures are translated
here, so no SQLAlchemy exception crosses a component boundary.
"""

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from keygate.config import Settings
from keygate.errors import GatewayError, GatewayUnavailable, ServerError

logger = structlog.get_logger()

T = TypeVar("T")


def build_engine(settings: Settings) -> AsyncEngine:
    """Create the engine for the configured database URL."""
    if settings.database_url.startswith("sqlite"):
        # SQLite has no server-side pool to size
        return create_async_engine(settings.database_url, echo=settings.debug)

    # Connection pool: min 5, max 20 connections.
    return create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_size=5,
        max_overflow=15,
        pool_timeout=settings.store_timeout_seconds,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory; each unit of work gets its own session."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def run_unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    timeout: float,
) -> T:
    """Run `work` inside a single transaction with an explicit timeout.

    Commits when `work` returns, rolls back when it raises. GatewayErrors
    raised by `work` pass through unchanged; timeouts and lost connections
    become gateway_error, any other database failure becomes server_error.
    """

    async def _unit() -> T:
        async with session_factory() as db:
            async with db.begin():
                return await work(db)

    try:
        return await asyncio.wait_for(_unit(), timeout=timeout)
    except GatewayError:
        raise
    except asyncio.TimeoutError as e:
        logger.error("keygate.store.timeout", timeout=timeout)
        raise GatewayUnavailable("Credential store timed out") from e
    except (OperationalError, InterfaceError) as e:
        logger.error("keygate.store.unreachable", error=str(e))
        raise GatewayUnavailable("Credential store unreachable") from e
    except SQLAlchemyError as e:
        logger.error("keygate.store.error", error=str(e))
        raise ServerError() from e
