"""Gateway error kinds.

Every failure that reaches a caller is one of these. Components translate
library exceptions (py_webauthn, PyJWT, SQLAlchemy, httpx) into a
GatewayError at their boundary; the dispatcher renders it as
{"error": kind, "message": ..., **details} with the matching status code.
"""

from typing import Any, Optional


class GatewayError(Exception):
    """Base class: a stable error kind plus a human-readable message."""

    kind = "server_error"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message, **self.details}


# ─── 400 ─────────────────────────────────────────────────


class BadRequest(GatewayError):
    kind = "bad_request"
    status_code = 400
    default_message = "Invalid request body"


class OperationUnknown(GatewayError):
    kind = "op_unknown"
    status_code = 400
    default_message = "Unknown operation"


# ─── 401: tokens ─────────────────────────────────────────


class Unauthorized(GatewayError):
    kind = "unauthorized"
    status_code = 401
    default_message = "Bearer token required"


class TokenExpired(Unauthorized):
    kind = "token_expired"
    default_message = "Token has expired"


class TokenInvalid(Unauthorized):
    kind = "token_invalid"
    default_message = "Token is malformed"


class TokenClaimMismatch(Unauthorized):
    default_message = "Token was not issued for this service"


# ─── 401 / 404: ceremonies ───────────────────────────────


class ChallengeExpired(GatewayError):
    kind = "challenge_expired"
    status_code = 401
    default_message = "Challenge expired or not found; restart the ceremony"


class AttestationFailed(GatewayError):
    kind = "attestation_failed"
    status_code = 401
    default_message = "WebAuthn attestation verification failed"


class AssertionFailed(GatewayError):
    kind = "assertion_failed"
    status_code = 401
    default_message = "WebAuthn assertion verification failed"


class CredentialNotFound(GatewayError):
    kind = "credential_not_found"
    status_code = 404
    default_message = "Unknown credential"


# ─── 429 ─────────────────────────────────────────────────


class RateLimited(GatewayError):
    kind = "rate_limited"
    status_code = 429
    default_message = "Rate limit exceeded. Try again later."

    def __init__(self, op: str, retry_after_ms: int):
        super().__init__(op=op, retryAfterMs=retry_after_ms)
        self.retry_after_ms = retry_after_ms


# ─── 5xx ─────────────────────────────────────────────────


class ServerError(GatewayError):
    pass


class GatewayUnavailable(GatewayError):
    kind = "gateway_error"
    status_code = 502
    default_message = "Downstream service temporarily unavailable"
