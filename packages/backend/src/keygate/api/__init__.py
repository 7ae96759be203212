"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: There are no per-route auth dependencies. Both RPC endpoints hand
the raw body to the RequestDispatcher, which authenticates (API surface
only), rate-limits and validates in a fixed order.
"""

from fastapi import APIRouter

from keygate.api.health import router as health_router
from keygate.api.rpc import router as rpc_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(rpc_router, tags=["rpc"])
