"""WebAuthn option generation and response verification.

Learn: py_webauthn does the cryptography: parsing attestation objects,
checking the RP ID hash, origin, challenge and signatures. This module
pins the relying-party parameters, converts py_webauthn's results into
small value objects, and turns *every* library failure into
AttestationFailed / AssertionFailed so no library exception escapes.

Verification is synchronous CPU-bound work with no I/O.
"""

import json
from dataclasses import dataclass, field
from typing import Any

import structlog
from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, options_to_json
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from keygate.config import Settings
from keygate.errors import AssertionFailed, AttestationFailed

logger = structlog.get_logger()

SUPPORTED_ALGORITHMS = [
    COSEAlgorithmIdentifier.ECDSA_SHA_256,
    COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
]

CEREMONY_TIMEOUT_MS = 60_000


@dataclass(frozen=True)
class VerifiedRegistration:
    credential_id: bytes
    public_key: bytes
    sign_count: int
    transports: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class VerifiedAssertion:
    credential_id: bytes
    new_sign_count: int


def credential_id_from_response(response: dict) -> bytes:
    """Decode the credential id a browser response claims (rawId, then id)."""
    raw = response.get("rawId") or response.get("id")
    if not isinstance(raw, str) or not raw:
        raise AssertionFailed("Credential id missing from assertion")
    try:
        return base64url_to_bytes(raw)
    except (ValueError, TypeError):
        raise AssertionFailed("Credential id is not valid base64url")


def _options_to_dict(options: Any) -> dict[str, Any]:
    # options_to_json base64url-encodes every binary field for the browser
    return json.loads(options_to_json(options))


class WebAuthnVerifier:
    """Relying-party side of the WebAuthn protocol."""

    def __init__(self, rp_id: str, rp_name: str, origin: str):
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin

    @classmethod
    def from_settings(cls, settings: Settings) -> "WebAuthnVerifier":
        return cls(settings.rp_id, settings.rp_name, settings.origin)

    # ─── Registration ────────────────────────────────────

    def registration_options(
        self,
        *,
        user_id: str,
        user_name: str,
        challenge: bytes,
    ) -> dict[str, Any]:
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user_id.encode("utf-8"),
            user_name=user_name,
            user_display_name=user_name,
            challenge=challenge,
            timeout=CEREMONY_TIMEOUT_MS,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            supported_pub_key_algs=SUPPORTED_ALGORITHMS,
        )
        return _options_to_dict(options)

    def verify_registration(
        self, response: dict, expected_challenge: bytes
    ) -> VerifiedRegistration:
        try:
            verification = verify_registration_response(
                credential=response,
                expected_challenge=expected_challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                require_user_verification=False,
                supported_pub_key_algs=SUPPORTED_ALGORITHMS,
            )
        except Exception as e:
            logger.warning("keygate.webauthn.attestation_rejected", reason=str(e))
            raise AttestationFailed() from None

        transports = response.get("response", {}).get("transports") or []
        return VerifiedRegistration(
            credential_id=verification.credential_id,
            public_key=verification.credential_public_key,
            sign_count=verification.sign_count,
            transports=[t for t in transports if isinstance(t, str)],
        )

    # ─── Authentication ──────────────────────────────────

    def authentication_options(self, *, challenge: bytes) -> dict[str, Any]:
        options = generate_authentication_options(
            rp_id=self.rp_id,
            challenge=challenge,
            timeout=CEREMONY_TIMEOUT_MS,
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        return _options_to_dict(options)

    def verify_assertion(
        self,
        response: dict,
        expected_challenge: bytes,
        *,
        public_key: bytes,
        sign_count: int,
    ) -> VerifiedAssertion:
        try:
            verification = verify_authentication_response(
                credential=response,
                expected_challenge=expected_challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=public_key,
                credential_current_sign_count=sign_count,
                require_user_verification=False,
            )
        except Exception as e:
            logger.warning("keygate.webauthn.assertion_rejected", reason=str(e))
            raise AssertionFailed() from None

        return VerifiedAssertion(
            credential_id=verification.credential_id,
            new_sign_count=verification.new_sign_count,
        )
