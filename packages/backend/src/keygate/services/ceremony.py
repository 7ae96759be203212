"""WebAuthn ceremony — registration and authentication state machine.

Learn: Each ceremony is two calls with a challenge in between:

  Idle ──start──▶ ChallengeIssued ──finish──▶ Verified | Failed

Registration:
1. start_registration  → mint a user id, issue challenge "reg:<user id>"
2. finish_registration → consume challenge, verify attestation, store
   user + credential in one transaction, issue a session token

Authentication:
1. start_authentication  → mint a nonce, issue challenge "auth:<nonce>"
   (there is no user id yet, so the nonce correlates the two calls)
2. finish_authentication → consume challenge, look up credential, verify
   assertion + clone check, commit the new counter, issue a token

The challenge is consumed before anything is verified, so it is gone
whatever the outcome. Nothing is retried: any failure means the client
restarts from start_*.
"""

import uuid
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from webauthn.helpers import bytes_to_base64url

from keygate.auth.jwt import TokenIssuer
from keygate.auth.webauthn import WebAuthnVerifier, credential_id_from_response
from keygate.db.engine import run_unit_of_work
from keygate.db.models import User
from keygate.errors import (
    AssertionFailed,
    AttestationFailed,
    ChallengeExpired,
    CredentialNotFound,
)
from keygate.events.store import EventStore
from keygate.events.types import (
    CREDENTIAL_AUTHENTICATED,
    CREDENTIAL_REGISTERED,
    USER_REGISTERED,
)
from keygate.services.challenge_store import (
    ChallengeStore,
    authentication_key,
    registration_key,
)
from keygate.services.credential_registry import CredentialRegistry

logger = structlog.get_logger()


def counter_advanced(stored: int, new: int) -> bool:
    """Clone detection: the counter must strictly increase.

    Both zero is accepted; many platform authenticators never count.
    """
    if stored == 0 and new == 0:
        return True
    return new > stored


def user_payload(user: User) -> dict[str, Any]:
    return {
        "id": str(user.id),
        "emailVerified": user.email_verified,
        "createdAt": user.created_at.isoformat() if user.created_at else None,
    }


class WebAuthnCeremony:
    """Orchestrates ChallengeStore, CredentialRegistry and TokenIssuer."""

    def __init__(
        self,
        *,
        challenges: ChallengeStore,
        session_factory: async_sessionmaker[AsyncSession],
        tokens: TokenIssuer,
        verifier: WebAuthnVerifier,
        store_timeout: float = 10.0,
    ):
        self.challenges = challenges
        self.session_factory = session_factory
        self.tokens = tokens
        self.verifier = verifier
        self.store_timeout = store_timeout

    def _token_response(self, user: User) -> dict[str, Any]:
        return {
            "token": self.tokens.issue(str(user.id)),
            "tokenType": "Bearer",
            "expiresIn": self.tokens.ttl_seconds,
            "user": user_payload(user),
        }

    # ─── Registration ───────────────────────────────────────

    async def start_registration(self, user_hint: Optional[str] = None) -> dict[str, Any]:
        """Mint a user id and issue its registration challenge."""
        user_id = str(uuid.uuid4())
        challenge = await self.challenges.issue(registration_key(user_id))

        user_name = (user_hint or "").strip() or f"user_{user_id}"
        options = self.verifier.registration_options(
            user_id=user_id, user_name=user_name, challenge=challenge
        )
        logger.info("keygate.ceremony.registration_started", user_id=user_id)
        return {
            "challenge": options["challenge"],
            "userId": user_id,
            "publicKey": options,
        }

    async def finish_registration(
        self, user_id: uuid.UUID, attestation_response: dict
    ) -> dict[str, Any]:
        """Verify the attestation for user_id and persist the credential."""
        challenge = await self.challenges.consume(registration_key(str(user_id)))
        if challenge is None:
            logger.info("keygate.ceremony.registration_no_challenge", user_id=str(user_id))
            raise ChallengeExpired()

        verified = self.verifier.verify_registration(attestation_response, challenge)

        async def persist(db: AsyncSession) -> User:
            registry = CredentialRegistry(db)
            existing = await registry.lookup(verified.credential_id)
            if existing is not None and existing.user_id != user_id:
                logger.warning(
                    "keygate.ceremony.credential_owned_elsewhere",
                    user_id=str(user_id),
                    credential_id=bytes_to_base64url(verified.credential_id),
                )
                raise AttestationFailed()

            user = await registry.create_user(user_id)
            await registry.register_credential(
                verified.credential_id,
                user_id,
                verified.public_key,
                verified.sign_count,
                verified.transports,
            )
            events = EventStore(db)
            if existing is None:
                await events.append(
                    stream_id=f"user:{user_id}",
                    event_type=USER_REGISTERED,
                    data={"user_id": str(user_id)},
                )
            await events.append(
                stream_id=f"credential:{bytes_to_base64url(verified.credential_id)}",
                event_type=CREDENTIAL_REGISTERED,
                data={
                    "user_id": str(user_id),
                    "sign_count": verified.sign_count,
                    "transports": verified.transports,
                },
            )
            return user

        user = await run_unit_of_work(
            self.session_factory, persist, timeout=self.store_timeout
        )
        logger.info(
            "keygate.ceremony.registration_finished",
            user_id=str(user_id),
            credential_id=bytes_to_base64url(verified.credential_id),
        )
        return self._token_response(user)

    # ─── Authentication ─────────────────────────────────────

    async def start_authentication(self) -> dict[str, Any]:
        """Mint a nonce and issue its authentication challenge."""
        nonce = str(uuid.uuid4())
        challenge = await self.challenges.issue(authentication_key(nonce))
        options = self.verifier.authentication_options(challenge=challenge)
        logger.info("keygate.ceremony.authentication_started", nonce=nonce)
        return {
            "challenge": options["challenge"],
            "nonce": nonce,
            "publicKey": options,
        }

    async def finish_authentication(
        self, nonce: str, assertion_response: dict
    ) -> dict[str, Any]:
        """Verify an assertion and advance the credential's counter."""
        challenge = await self.challenges.consume(authentication_key(nonce))
        if challenge is None:
            logger.info("keygate.ceremony.authentication_no_challenge", nonce=nonce)
            raise ChallengeExpired()

        credential_id = credential_id_from_response(assertion_response)
        encoded_id = bytes_to_base64url(credential_id)

        async def load(db: AsyncSession):
            registry = CredentialRegistry(db)
            credential = await registry.lookup(credential_id)
            if credential is None or credential.revoked:
                # Same external error either way; the log keeps the difference
                logger.info(
                    "keygate.ceremony.credential_rejected",
                    credential_id=encoded_id,
                    reason="revoked" if credential is not None else "unknown",
                )
                raise CredentialNotFound()
            return credential.user_id, credential.public_key, credential.sign_count

        owner_id, public_key, stored_count = await run_unit_of_work(
            self.session_factory, load, timeout=self.store_timeout
        )

        verified = self.verifier.verify_assertion(
            assertion_response,
            challenge,
            public_key=public_key,
            sign_count=stored_count,
        )
        if not counter_advanced(stored_count, verified.new_sign_count):
            logger.warning(
                "keygate.ceremony.counter_not_advanced",
                credential_id=encoded_id,
                stored=stored_count,
                received=verified.new_sign_count,
            )
            raise AssertionFailed()

        async def advance(db: AsyncSession) -> User:
            registry = CredentialRegistry(db)
            if not await registry.advance_counter(
                credential_id, verified.new_sign_count
            ):
                # Revoked, or advanced by a concurrent login since we read it
                if await registry.find_by_credential_id(credential_id) is None:
                    raise CredentialNotFound()
                logger.warning(
                    "keygate.ceremony.counter_race_lost",
                    credential_id=encoded_id,
                    received=verified.new_sign_count,
                )
                raise AssertionFailed()
            await EventStore(db).append(
                stream_id=f"credential:{encoded_id}",
                event_type=CREDENTIAL_AUTHENTICATED,
                data={
                    "user_id": str(owner_id),
                    "sign_count": verified.new_sign_count,
                },
            )
            return await registry.get_user(owner_id)

        # Counter is committed before the token exists
        user = await run_unit_of_work(
            self.session_factory, advance, timeout=self.store_timeout
        )
        logger.info(
            "keygate.ceremony.authentication_finished",
            user_id=str(owner_id),
            credential_id=encoded_id,
        )
        return self._token_response(user)
