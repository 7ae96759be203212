"""JWT session token creation and verification.

Learn: Session tokens are stateless HS256 JWTs carrying the authenticated
subject. There is no revocation list; expiry is the only termination,
so keep token_ttl_seconds short.

verify() also pins issuer and audience: a token minted by another
deployment sharing the secret (staging vs production) is rejected.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from keygate.config import Settings
from keygate.errors import TokenClaimMismatch, TokenExpired, TokenInvalid

REQUIRED_CLAIMS = ["sub", "iss", "aud", "iat", "exp", "jti"]


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of a session token."""

    subject: str
    token_id: str
    issued_at: datetime
    expires_at: datetime


class TokenIssuer:
    """Creates and verifies signed session tokens."""

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        issuer: str = "keygate-auth",
        audience: str = "keygate-api",
        ttl_seconds: int = 3600,
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            issuer=settings.token_issuer,
            audience=settings.token_audience,
            ttl_seconds=settings.token_ttl_seconds,
        )

    def issue(self, user_id: str, ttl_seconds: Optional[int] = None) -> str:
        """Create a signed token for user_id."""
        now = datetime.now(timezone.utc)
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        payload = {
            "sub": str(user_id),
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + timedelta(seconds=ttl),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> TokenClaims:
        """Verify signature, expiry, issuer and audience.

        Raises TokenExpired, TokenClaimMismatch or TokenInvalid.
        """
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                audience=self.audience,
                options={"require": REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpired()
        except (
            jwt.InvalidIssuerError,
            jwt.InvalidAudienceError,
            jwt.MissingRequiredClaimError,
        ):
            raise TokenClaimMismatch()
        except jwt.InvalidTokenError:
            raise TokenInvalid()

        return TokenClaims(
            subject=payload["sub"],
            token_id=payload["jti"],
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
