"""Request dispatcher — the single gate every RPC passes through.

Learn: Order matters and is fixed:

  authenticate → resolve op → rate-limit → validate input → handle

Authenticating first means a caller without a valid token never spends
anyone's rate budget. Rate limiting before validation means malformed
floods are throttled like any other traffic.

Every failure leaves as {"error": kind, "message": ...}. GatewayErrors
carry their own kind and status; anything else is logged with its
traceback and answered with a generic server_error.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from keygate.auth.dependencies import CurrentIdentity, authenticate
from keygate.dispatcher.operations import (
    CATALOG,
    Operation,
    OperationSpec,
    RpcContext,
    Surface,
)
from keygate.errors import (
    BadRequest,
    GatewayError,
    OperationUnknown,
    RateLimited,
    ServerError,
)
from keygate.gateway import Gateway
from keygate.services.rate_limiter import Admission

logger = structlog.get_logger()


@dataclass
class DispatchResult:
    status_code: int
    payload: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


def validation_issues(error: ValidationError) -> list[dict[str, str]]:
    return [
        {"path": ".".join(str(p) for p in issue["loc"]), "message": issue["msg"]}
        for issue in error.errors()
    ]


def retry_after_seconds(retry_after_ms: int) -> int:
    return max(1, math.ceil(retry_after_ms / 1000))


class RequestDispatcher:
    """Routes {op, ...} bodies to their handlers."""

    def __init__(
        self,
        gateway: Gateway,
        catalog: Optional[dict[Operation, OperationSpec]] = None,
    ):
        catalog = CATALOG if catalog is None else catalog
        missing = [op.value for op in Operation if op not in catalog]
        if missing:
            raise RuntimeError(f"Operations without a handler: {', '.join(missing)}")
        self.gateway = gateway
        self.catalog = dict(catalog)

    def operations_for(self, surface: Surface) -> list[Operation]:
        return [op for op, spec in self.catalog.items() if spec.surface == surface]

    def resolve(self, surface: Surface, body: Any) -> tuple[Operation, OperationSpec]:
        if not isinstance(body, dict):
            raise BadRequest(issues=[{"path": "", "message": "Body must be a JSON object"}])
        tag = body.get("op")
        if not isinstance(tag, str) or not tag:
            raise BadRequest(issues=[{"path": "op", "message": "Field required"}])
        try:
            op = Operation(tag)
        except ValueError:
            raise OperationUnknown(f"Unknown operation: {tag}")
        spec = self.catalog[op]
        if spec.surface != surface:
            # Ops from the other surface are unknown here
            raise OperationUnknown(f"Unknown operation: {tag}")
        return op, spec

    async def dispatch(
        self,
        surface: Surface,
        body: Any,
        *,
        authorization: Optional[str] = None,
        client_host: Optional[str] = None,
    ) -> DispatchResult:
        """Run one request through the gate. Never raises."""
        try:
            return await self._dispatch(surface, body, authorization, client_host)
        except RateLimited as e:
            return DispatchResult(
                e.status_code,
                e.to_dict(),
                {"Retry-After": str(retry_after_seconds(e.retry_after_ms))},
            )
        except GatewayError as e:
            logger.info("keygate.rpc.rejected", surface=surface.value, error=e.kind)
            return DispatchResult(e.status_code, e.to_dict())
        except Exception:
            logger.exception("keygate.rpc.handler_crashed", surface=surface.value)
            error = ServerError("Operation failed")
            return DispatchResult(error.status_code, error.to_dict())

    async def _dispatch(
        self,
        surface: Surface,
        body: Any,
        authorization: Optional[str],
        client_host: Optional[str],
    ) -> DispatchResult:
        identity: Optional[CurrentIdentity] = None
        if surface == Surface.API:
            identity = authenticate(authorization, self.gateway.tokens)

        op, spec = self.resolve(surface, body)

        principal = identity.user_id if identity else (client_host or "unknown")
        admission = await self.gateway.rate_limiter.admit(op.value, principal)
        if not admission.allowed:
            logger.warning(
                "keygate.rpc.rate_limited",
                op=op.value,
                principal=principal,
                retry_after_ms=admission.retry_after_ms,
            )
            raise RateLimited(op.value, admission.retry_after_ms)

        params = {k: v for k, v in body.items() if k != "op"}
        try:
            request = spec.model.model_validate(params)
        except ValidationError as e:
            raise BadRequest(issues=validation_issues(e))

        ctx = RpcContext(
            gateway=self.gateway,
            identity=identity,
            client_host=client_host or "unknown",
        )
        payload = await spec.handler(ctx, request)
        logger.info("keygate.rpc.handled", op=op.value, principal=principal)
        return DispatchResult(200, payload, self._limit_headers(admission))

    @staticmethod
    def _limit_headers(admission: Admission) -> dict[str, str]:
        if admission.limit is None:
            return {}
        return {
            "X-RateLimit-Limit": str(admission.limit),
            "X-RateLimit-Remaining": str(max(0, admission.remaining or 0)),
        }
