"""Operation catalog — every RPC the gateway accepts.

Learn: The catalog is a closed table: one Operation enum member per op tag,
each bound to exactly one OperationSpec (request model, handler, surface).
RequestDispatcher refuses to start if a member is missing from the table, so adding an
op without wiring it is caught at startup instead of at request time.

Request models use camelCase aliases on the wire (userHint, flowId, ...)
and snake_case in Python. Ceremony models ignore unknown fields; API
models reject them.
"""

import enum
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url

from keygate.auth.dependencies import CurrentIdentity
from keygate.db.engine import run_unit_of_work
from keygate.errors import BadRequest, CredentialNotFound, Unauthorized
from keygate.events.store import EventStore
from keygate.events.types import CREDENTIAL_REVOKED, PREFERENCES_UPDATED
from keygate.gateway import Gateway
from keygate.services.ceremony import user_payload
from keygate.services.credential_registry import CredentialRegistry


class Operation(str, enum.Enum):
    REGISTER_START = "register.start"
    REGISTER_FINISH = "register.finish"
    AUTHENTICATE_START = "authenticate.start"
    AUTHENTICATE_FINISH = "authenticate.finish"
    SESSION_VALIDATE = "session.validate"
    PREFERENCES_UPDATE = "account.preferences.update"
    CREDENTIALS_LIST = "credentials.list"
    CREDENTIALS_REVOKE = "credentials.revoke"
    CHAT_SEND = "chat.send"


class Surface(str, enum.Enum):
    CEREMONY = "ceremony"  # POST /api/v1/auth/rpc, no token
    API = "api"  # POST /api/v1/rpc, Bearer token


@dataclass
class RpcContext:
    """What a handler gets besides its validated request."""

    gateway: Gateway
    identity: Optional[CurrentIdentity] = None
    client_host: str = "unknown"

    def subject(self) -> uuid.UUID:
        """The authenticated user id. Tokens we issue always carry a UUID."""
        if self.identity is None:
            raise Unauthorized()
        try:
            return uuid.UUID(self.identity.user_id)
        except ValueError:
            raise Unauthorized()

    async def unit_of_work(self, work: Callable[[AsyncSession], Awaitable[Any]]) -> Any:
        return await run_unit_of_work(
            self.gateway.session_factory,
            work,
            timeout=self.gateway.settings.store_timeout_seconds,
        )


# ─── Request models ──────────────────────────────────────


class CeremonyRequest(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class ApiRequest(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )


class RegisterStartRequest(CeremonyRequest):
    user_hint: Optional[str] = Field(default=None, max_length=64)


class RegisterFinishRequest(CeremonyRequest):
    user_id: uuid.UUID
    attestation_response: dict[str, Any]


class AuthenticateStartRequest(CeremonyRequest):
    pass


class AuthenticateFinishRequest(CeremonyRequest):
    nonce: str = Field(min_length=8, max_length=64)
    assertion_response: dict[str, Any]


class SessionValidateRequest(ApiRequest):
    pass


class Preferences(ApiRequest):
    language: Optional[Literal["en", "es"]] = None
    theme: Optional[Literal["light", "dark", "auto"]] = None
    notifications: Optional[bool] = None


class PreferencesUpdateRequest(ApiRequest):
    preferences: Preferences


class CredentialsListRequest(ApiRequest):
    pass


class CredentialsRevokeRequest(ApiRequest):
    credential_id: str = Field(min_length=1, max_length=1024)


class ChatSendRequest(ApiRequest):
    flow_id: str = Field(min_length=1)
    message: str = Field(min_length=1, max_length=2000)
    vars: dict[str, Any] = Field(default_factory=dict)
    override_config: dict[str, Any] = Field(default_factory=dict)


# ─── Ceremony handlers ───────────────────────────────────


async def register_start(ctx: RpcContext, req: RegisterStartRequest) -> dict:
    return await ctx.gateway.ceremony().start_registration(req.user_hint)


async def register_finish(ctx: RpcContext, req: RegisterFinishRequest) -> dict:
    return await ctx.gateway.ceremony().finish_registration(
        req.user_id, req.attestation_response
    )


async def authenticate_start(ctx: RpcContext, req: AuthenticateStartRequest) -> dict:
    return await ctx.gateway.ceremony().start_authentication()


async def authenticate_finish(ctx: RpcContext, req: AuthenticateFinishRequest) -> dict:
    return await ctx.gateway.ceremony().finish_authentication(
        req.nonce, req.assertion_response
    )


# ─── Account handlers ────────────────────────────────────


def credential_payload(credential) -> dict[str, Any]:
    return {
        "id": bytes_to_base64url(credential.credential_id),
        "transports": list(credential.transports or []),
        "signCount": credential.sign_count,
        "revoked": credential.revoked,
        "createdAt": credential.created_at.isoformat() if credential.created_at else None,
        "lastUsedAt": (
            credential.last_used_at.isoformat() if credential.last_used_at else None
        ),
    }


async def session_validate(ctx: RpcContext, req: SessionValidateRequest) -> dict:
    """Confirm the token's subject still exists and holds a live credential."""
    user_id = ctx.subject()

    async def work(db: AsyncSession) -> dict:
        registry = CredentialRegistry(db)
        user = await registry.get_user(user_id)
        if user is None:
            raise Unauthorized("Session user no longer exists")
        active = await registry.count_active_for_user(user_id)
        if active == 0:
            raise Unauthorized("Session user has no active credentials")
        return {"user": user_payload(user), "activeCredentials": active}

    return await ctx.unit_of_work(work)


async def preferences_update(ctx: RpcContext, req: PreferencesUpdateRequest) -> dict:
    user_id = ctx.subject()
    changes = req.preferences.model_dump(exclude_none=True)

    async def work(db: AsyncSession) -> dict:
        user = await CredentialRegistry(db).update_preferences(user_id, changes)
        if user is None:
            raise Unauthorized("Session user no longer exists")
        await EventStore(db).append(
            stream_id=f"user:{user_id}",
            event_type=PREFERENCES_UPDATED,
            data={"changes": changes},
        )
        return {"preferences": dict(user.preferences)}

    return await ctx.unit_of_work(work)


async def credentials_list(ctx: RpcContext, req: CredentialsListRequest) -> dict:
    user_id = ctx.subject()

    async def work(db: AsyncSession) -> dict:
        credentials = await CredentialRegistry(db).list_for_user(user_id)
        return {"credentials": [credential_payload(c) for c in credentials]}

    return await ctx.unit_of_work(work)


async def credentials_revoke(ctx: RpcContext, req: CredentialsRevokeRequest) -> dict:
    user_id = ctx.subject()
    try:
        credential_id = base64url_to_bytes(req.credential_id)
    except (ValueError, TypeError):
        raise BadRequest(
            issues=[{"path": "credentialId", "message": "Not valid base64url"}]
        )

    async def work(db: AsyncSession) -> dict:
        credential = await CredentialRegistry(db).revoke(credential_id, owner_id=user_id)
        if credential is None:
            raise CredentialNotFound()
        await EventStore(db).append(
            stream_id=f"credential:{req.credential_id}",
            event_type=CREDENTIAL_REVOKED,
            data={"user_id": str(user_id), "by": "owner"},
        )
        return {"revoked": True}

    return await ctx.unit_of_work(work)


async def chat_send(ctx: RpcContext, req: ChatSendRequest) -> dict:
    data = await ctx.gateway.chat.predict(
        req.flow_id,
        user_id=str(ctx.subject()),
        question=req.message,
        variables=req.vars,
        override_config=req.override_config,
    )
    return {"data": data}


# ─── Catalog ─────────────────────────────────────────────


Handler = Callable[[RpcContext, Any], Awaitable[dict]]


@dataclass(frozen=True)
class OperationSpec:
    model: type[BaseModel]
    handler: Handler
    auth_required: bool

    @property
    def surface(self) -> Surface:
        return Surface.API if self.auth_required else Surface.CEREMONY


CATALOG: dict[Operation, OperationSpec] = {
    Operation.REGISTER_START: OperationSpec(RegisterStartRequest, register_start, False),
    Operation.REGISTER_FINISH: OperationSpec(RegisterFinishRequest, register_finish, False),
    Operation.AUTHENTICATE_START: OperationSpec(
        AuthenticateStartRequest, authenticate_start, False
    ),
    Operation.AUTHENTICATE_FINISH: OperationSpec(
        AuthenticateFinishRequest, authenticate_finish, False
    ),
    Operation.SESSION_VALIDATE: OperationSpec(SessionValidateRequest, session_validate, True),
    Operation.PREFERENCES_UPDATE: OperationSpec(
        PreferencesUpdateRequest, preferences_update, True
    ),
    Operation.CREDENTIALS_LIST: OperationSpec(CredentialsListRequest, credentials_list, True),
    Operation.CREDENTIALS_REVOKE: OperationSpec(
        CredentialsRevokeRequest, credentials_revoke, True
    ),
    Operation.CHAT_SEND: OperationSpec(ChatSendRequest, chat_send, True),
}
