"""RPC endpoints — one POST route per surface.

Learn: The body is parsed here rather than by a FastAPI model because the
shape depends on the "op" tag, and a malformed body must still come back
as our own bad_request error (after authentication), not FastAPI's 422.
"""

import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from keygate.api.deps import get_dispatcher
from keygate.dispatcher.operations import Surface
from keygate.dispatcher.rpc import RequestDispatcher

router = APIRouter()


async def _read_json(request: Request) -> Any:
    """Parsed body, or None when it is empty or not JSON."""
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return None


async def _handle(
    surface: Surface,
    request: Request,
    dispatcher: RequestDispatcher,
    authorization: Optional[str],
) -> JSONResponse:
    result = await dispatcher.dispatch(
        surface,
        await _read_json(request),
        authorization=authorization,
        client_host=request.client.host if request.client else None,
    )
    return JSONResponse(
        status_code=result.status_code,
        content=result.payload,
        headers=result.headers,
    )


@router.post("/auth/rpc")
async def ceremony_rpc(
    request: Request,
    dispatcher: RequestDispatcher = Depends(get_dispatcher),
):
    """WebAuthn ceremony operations (no token)."""
    return await _handle(Surface.CEREMONY, request, dispatcher, None)


@router.post("/rpc")
async def api_rpc(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    dispatcher: RequestDispatcher = Depends(get_dispatcher),
):
    """Authenticated operations (Authorization: Bearer <token>)."""
    return await _handle(Surface.API, request, dispatcher, authorization)
