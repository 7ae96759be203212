"""SQLAlchemy ORM models — single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Column types are dialect-portable: native UUID/JSONB on PostgreSQL, CHAR/JSON
on SQLite (used by the test suite and local development).

Key concepts:
- users: one row per registered person, minted by the registration ceremony
- webauthn_credentials: 1:N per user, unique on the authenticator's credential id
- events: append-only audit log, written in the same transaction as the change
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JsonDoc = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


class User(Base):
    """A registered person, identified only by an opaque UUID.

    Learn: There is no email or password; identity is proven by owning
    one of the user's WebAuthn credentials. Preferences are a free-form
    JSON blob updated through account.preferences.update.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    email_verified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    preferences: Mapped[dict] = mapped_column(JsonDoc, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    credentials: Mapped[list["WebAuthnCredential"]] = relationship(
        back_populates="user"
    )


class WebAuthnCredential(Base):
    """A public-key credential bound to one user.

    Learn: credential_id is chosen by the authenticator and is the lookup
    key during authentication. sign_count must never go backwards across
    successful verifications. A non-increasing counter means a cloned
    authenticator (or a replay) and is rejected by the ceremony.
    """

    __tablename__ = "webauthn_credentials"
    __table_args__ = (
        Index("idx_credentials_user", "user_id"),
        CheckConstraint("sign_count >= 0", name="ck_credentials_sign_count"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    credential_id: Mapped[bytes] = mapped_column(
        LargeBinary, unique=True, nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    public_key: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    sign_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transports: Mapped[list] = mapped_column(JsonDoc, nullable=False, default=list)
    revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    last_used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    user: Mapped["User"] = relationship(back_populates="credentials")


class Event(Base):
    """Immutable audit log of authentication state changes.

    stream_id examples: "user:<uuid>", "credential:<base64url id>"
    type examples: "user.registered", "credential.authenticated"
    """

    __tablename__ = "events"
    __table_args__ = (
        Index("idx_events_stream", "stream_id", "id"),
        Index("idx_events_type", "type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream_id: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict] = mapped_column(JsonDoc, nullable=False)
    meta: Mapped[dict] = mapped_column(
        "metadata", JsonDoc, nullable=False, default=dict
    )
    # Note: Python attr is "meta" because "metadata" is reserved by SQLAlchemy.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
