"""Credential registry — users and their WebAuthn credentials.

Learn: The registry is bound to one AsyncSession and only ever flushes.
The caller (a unit of work) owns the transaction, which is what lets the
registration ceremony create the user and the credential atomically.

The registry does no cryptography. advance_counter() only stores a counter
that moves forward, as one conditional UPDATE, so two logins racing with
the same counter cannot both succeed. Verifying the assertion that
produced the counter is the ceremony's job.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.db.models import User, WebAuthnCredential


class CredentialRegistry:
    """Durable mapping credential id → {owner, public key, counter, revoked}."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ─── Users ──────────────────────────────────────────────

    async def create_user(self, user_id: uuid.UUID) -> User:
        """Insert the user if missing. Returns the existing row otherwise."""
        user = await self.db.get(User, user_id)
        if user is not None:
            return user
        user = User(id=user_id, email_verified=False, preferences={})
        self.db.add(user)
        await self.db.flush()
        return user

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]:
        return await self.db.get(User, user_id)

    async def update_preferences(self, user_id: uuid.UUID, changes: dict) -> Optional[User]:
        """Merge `changes` into the user's preference blob."""
        user = await self.db.get(User, user_id)
        if user is None:
            return None
        # Reassign so the JSON column is marked dirty
        user.preferences = {**(user.preferences or {}), **changes}
        await self.db.flush()
        return user

    # ─── Credentials ────────────────────────────────────────

    async def register_credential(
        self,
        credential_id: bytes,
        user_id: uuid.UUID,
        public_key: bytes,
        sign_count: int,
        transports: Optional[list[str]] = None,
    ) -> WebAuthnCredential:
        """Upsert a credential.

        A retried registration-finish that already stored this credential id
        updates counter and metadata instead of creating a second row.
        """
        credential = await self.lookup(credential_id)
        if credential is not None:
            credential.sign_count = sign_count
            credential.public_key = public_key
            credential.transports = list(transports or [])
            await self.db.flush()
            return credential

        credential = WebAuthnCredential(
            credential_id=credential_id,
            user_id=user_id,
            public_key=public_key,
            sign_count=sign_count,
            transports=list(transports or []),
            revoked=False,
        )
        self.db.add(credential)
        await self.db.flush()
        return credential

    async def lookup(self, credential_id: bytes) -> Optional[WebAuthnCredential]:
        """Raw lookup, revoked credentials included."""
        result = await self.db.execute(
            select(WebAuthnCredential).where(
                WebAuthnCredential.credential_id == credential_id
            )
        )
        return result.scalars().first()

    async def find_by_credential_id(
        self, credential_id: bytes
    ) -> Optional[WebAuthnCredential]:
        """Ceremony lookup. Revoked credentials are treated as unknown."""
        credential = await self.lookup(credential_id)
        if credential is None or credential.revoked:
            return None
        return credential

    async def advance_counter(self, credential_id: bytes, new_count: int) -> bool:
        """Compare-and-swap the signature counter of a live credential.

        Stores new_count only if it is greater than the stored counter, or
        if both are zero. Returns False when no row qualified: the credential
        is unknown or revoked, or a concurrent login already reached this
        counter. Instances already loaded in the session are not refreshed.
        """
        if new_count == 0:
            moves_forward = WebAuthnCredential.sign_count == 0
        else:
            moves_forward = WebAuthnCredential.sign_count < new_count

        result = await self.db.execute(
            update(WebAuthnCredential)
            .where(
                WebAuthnCredential.credential_id == credential_id,
                WebAuthnCredential.revoked.is_(False),
                moves_forward,
            )
            .values(sign_count=new_count, last_used_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_for_user(self, user_id: uuid.UUID) -> list[WebAuthnCredential]:
        result = await self.db.execute(
            select(WebAuthnCredential)
            .where(WebAuthnCredential.user_id == user_id)
            .order_by(WebAuthnCredential.created_at.asc())
        )
        return list(result.scalars().all())

    async def count_active_for_user(self, user_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(WebAuthnCredential)
            .where(
                WebAuthnCredential.user_id == user_id,
                WebAuthnCredential.revoked.is_(False),
            )
        )
        return result.scalar_one()

    async def revoke(
        self, credential_id: bytes, owner_id: Optional[uuid.UUID] = None
    ) -> Optional[WebAuthnCredential]:
        """Mark a credential revoked. With owner_id, only the owner's own.

        Returns None when there is no such credential (for that owner).
        """
        credential = await self.lookup(credential_id)
        if credential is None:
            return None
        if owner_id is not None and credential.user_id != owner_id:
            return None
        credential.revoked = True
        await self.db.flush()
        return credential
