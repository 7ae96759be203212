"""CredentialRegistry tests: users, upsert, revocation, counters."""

import uuid

import pytest

from keygate.db.engine import run_unit_of_work
from keygate.services.credential_registry import CredentialRegistry


async def _in_tx(gateway, work):
    return await run_unit_of_work(gateway.session_factory, work, timeout=5.0)


@pytest.mark.asyncio
async def test_create_user_is_idempotent(gateway):
    user_id = uuid.uuid4()

    async def work(db):
        registry = CredentialRegistry(db)
        first = await registry.create_user(user_id)
        second = await registry.create_user(user_id)
        return first is second, first.email_verified, first.preferences

    same, verified, preferences = await _in_tx(gateway, work)
    assert same
    assert verified is False
    assert preferences == {}


@pytest.mark.asyncio
async def test_register_same_credential_twice_keeps_one_row(gateway):
    user_id = uuid.uuid4()
    cred_id = b"\x10" * 16

    async def work(db):
        registry = CredentialRegistry(db)
        await registry.create_user(user_id)
        await registry.register_credential(cred_id, user_id, b"pk-1", 0, ["usb"])
        await registry.register_credential(cred_id, user_id, b"pk-2", 7, ["internal"])
        return await registry.list_for_user(user_id)

    credentials = await _in_tx(gateway, work)
    assert len(credentials) == 1
    assert credentials[0].sign_count == 7
    assert credentials[0].public_key == b"pk-2"
    assert credentials[0].transports == ["internal"]


@pytest.mark.asyncio
async def test_find_by_credential_id_skips_revoked(gateway):
    user_id = uuid.uuid4()
    cred_id = b"\x20" * 16

    async def setup(db):
        registry = CredentialRegistry(db)
        await registry.create_user(user_id)
        await registry.register_credential(cred_id, user_id, b"pk", 0)
        await registry.revoke(cred_id)

    await _in_tx(gateway, setup)

    async def check(db):
        registry = CredentialRegistry(db)
        return await registry.find_by_credential_id(cred_id), await registry.lookup(cred_id)

    found, raw = await _in_tx(gateway, check)
    assert found is None
    assert raw is not None and raw.revoked


@pytest.mark.asyncio
async def test_find_unknown_credential_returns_none(gateway):
    async def work(db):
        return await CredentialRegistry(db).find_by_credential_id(b"missing")

    assert await _in_tx(gateway, work) is None


@pytest.mark.asyncio
async def test_advance_counter_only_moves_forward(gateway):
    user_id = uuid.uuid4()
    cred_id = b"\x30" * 16

    async def setup(db):
        registry = CredentialRegistry(db)
        await registry.create_user(user_id)
        await registry.register_credential(cred_id, user_id, b"pk", 10)

    await _in_tx(gateway, setup)

    async def advance(count):
        async def work(db):
            return await CredentialRegistry(db).advance_counter(cred_id, count)

        return await _in_tx(gateway, work)

    assert await advance(3) is False
    assert await advance(10) is False
    assert await advance(11) is True
    assert await advance(11) is False

    async def read(db):
        return await CredentialRegistry(db).lookup(cred_id)

    credential = await _in_tx(gateway, read)
    assert credential.sign_count == 11
    assert credential.last_used_at is not None


@pytest.mark.asyncio
async def test_advance_counter_accepts_zero_over_zero(gateway):
    user_id = uuid.uuid4()
    cred_id = b"\x31" * 16

    async def work(db):
        registry = CredentialRegistry(db)
        await registry.create_user(user_id)
        await registry.register_credential(cred_id, user_id, b"pk", 0)
        return await registry.advance_counter(cred_id, 0)

    assert await _in_tx(gateway, work) is True


@pytest.mark.asyncio
async def test_advance_counter_skips_revoked_and_unknown(gateway):
    user_id = uuid.uuid4()
    cred_id = b"\x32" * 16

    async def work(db):
        registry = CredentialRegistry(db)
        await registry.create_user(user_id)
        await registry.register_credential(cred_id, user_id, b"pk", 1)
        await registry.revoke(cred_id)
        return (
            await registry.advance_counter(cred_id, 5),
            await registry.advance_counter(b"\x33" * 16, 5),
        )

    assert await _in_tx(gateway, work) == (False, False)


@pytest.mark.asyncio
async def test_revoke_respects_owner(gateway):
    owner, stranger = uuid.uuid4(), uuid.uuid4()
    cred_id = b"\x40" * 16

    async def work(db):
        registry = CredentialRegistry(db)
        await registry.create_user(owner)
        await registry.register_credential(cred_id, owner, b"pk", 0)
        by_stranger = await registry.revoke(cred_id, owner_id=stranger)
        by_owner = await registry.revoke(cred_id, owner_id=owner)
        return by_stranger, by_owner

    by_stranger, by_owner = await _in_tx(gateway, work)
    assert by_stranger is None
    assert by_owner is not None and by_owner.revoked


@pytest.mark.asyncio
async def test_count_active_excludes_revoked(gateway):
    user_id = uuid.uuid4()

    async def work(db):
        registry = CredentialRegistry(db)
        await registry.create_user(user_id)
        await registry.register_credential(b"a" * 16, user_id, b"pk", 0)
        await registry.register_credential(b"b" * 16, user_id, b"pk", 0)
        await registry.revoke(b"a" * 16)
        return await registry.count_active_for_user(user_id)

    assert await _in_tx(gateway, work) == 1


@pytest.mark.asyncio
async def test_update_preferences_merges(gateway):
    user_id = uuid.uuid4()

    async def work(db):
        registry = CredentialRegistry(db)
        await registry.create_user(user_id)
        await registry.update_preferences(user_id, {"language": "es"})
        user = await registry.update_preferences(user_id, {"theme": "dark"})
        return user.preferences

    assert await _in_tx(gateway, work) == {"language": "es", "theme": "dark"}


@pytest.mark.asyncio
async def test_failed_unit_of_work_leaves_nothing_behind(gateway):
    user_id = uuid.uuid4()

    async def work(db):
        registry = CredentialRegistry(db)
        await registry.create_user(user_id)
        await registry.register_credential(b"c" * 16, user_id, b"pk", 0)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await _in_tx(gateway, work)

    async def check(db):
        registry = CredentialRegistry(db)
        return await registry.get_user(user_id), await registry.lookup(b"c" * 16)

    assert await _in_tx(gateway, check) == (None, None)
