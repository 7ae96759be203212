"""Bearer token extraction for the authenticated RPC surface.

Learn: The dispatcher authenticates before it looks at the operation's
rate limit or input, so a request without a valid token is turned away
without spending anyone's rate budget.
"""

from typing import Optional

from keygate.auth.jwt import TokenIssuer
from keygate.errors import Unauthorized


class CurrentIdentity:
    """The authenticated subject making the request."""

    def __init__(self, user_id: str, expires_at=None):
        self.user_id = user_id
        self.expires_at = expires_at

    def __repr__(self) -> str:
        return f"CurrentIdentity(user_id={self.user_id!r})"


def bearer_token(authorization: Optional[str]) -> str:
    """Return the token part of an "Authorization: Bearer <token>" header."""
    if not authorization:
        raise Unauthorized()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized()
    return token.strip()


def authenticate(authorization: Optional[str], tokens: TokenIssuer) -> CurrentIdentity:
    """Verify the bearer token and return the identity it carries.

    Raises Unauthorized (or a subclass naming the token failure).
    """
    claims = tokens.verify(bearer_token(authorization))
    return CurrentIdentity(user_id=claims.subject, expires_at=claims.expires_at)
