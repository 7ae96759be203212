"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running and its
dependencies (the credential database, Redis when configured) are reachable.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import text

from keygate import __version__
from keygate.api.deps import get_gateway
from keygate.gateway import Gateway

router = APIRouter()


@router.get("/health")
async def health_check(gateway: Gateway = Depends(get_gateway)):
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    # Check the credential store
    try:
        async with gateway.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {e}"

    # Check Redis (only when it backs challenges and rate limits)
    if gateway.redis is not None:
        try:
            await gateway.redis.ping()
            checks["redis"] = "ok"
        except Exception as e:
            checks["redis"] = f"error: {e}"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    return {"status": status, **checks}
