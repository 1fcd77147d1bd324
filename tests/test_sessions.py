# tests/test_sessions.py

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from taskbridge.errors import ConflictError, InvalidCredentials, ValidationError
from taskbridge.gateway import PersistenceGateway
from taskbridge.identity.sessions import SessionManager, hash_password, verify_password
from taskbridge.models import Entity, parse_timestamp, to_iso


def test_password_hashing_round_trip() -> None:
    stored = hash_password("correct horse")

    assert stored.startswith("$argon2")
    assert verify_password(stored, "correct horse") is True
    assert verify_password(stored, "wrong horse") is False
    assert verify_password(None, "correct horse") is False
    assert verify_password("not-a-hash", "correct horse") is False
    with pytest.raises(ValidationError):
        hash_password("short")


@pytest.mark.asyncio
async def test_register_creates_local_account_with_personal_project(gateway: PersistenceGateway) -> None:
    manager = SessionManager(gateway)

    user = await manager.register("Ivan", "s3cret-pass", email="ivan@example.com")

    assert user.username == "ivan"
    assert user.password_hash and user.password_hash.startswith("$argon2")
    assert user.federated_subject is None
    projects = await gateway.list(Entity.PROJECT, {"owner_id": user.id, "is_personal": True})
    assert len(projects) == 1

    with pytest.raises(ConflictError):
        await manager.register("ivan", "another-pass")


@pytest.mark.asyncio
async def test_login_logout(gateway: PersistenceGateway) -> None:
    manager = SessionManager(gateway, ttl_seconds=3600)
    user = await manager.register("judy", "s3cret-pass")

    session = await manager.login("JUDY", "s3cret-pass")

    assert session.user_id == user.id
    assert not session.is_expired()
    assert await gateway.find(Entity.SESSION, session.id) is not None

    await manager.logout(session.id)
    assert await gateway.find(Entity.SESSION, session.id) is None
    # logging out twice is harmless
    await manager.logout(session.id)


@pytest.mark.asyncio
async def test_bad_credentials(gateway: PersistenceGateway) -> None:
    manager = SessionManager(gateway)
    await manager.register("kim", "s3cret-pass")
    await gateway.create(Entity.USER, {"username": "federated_only", "federated_subject": "sub-k"})

    with pytest.raises(InvalidCredentials):
        await manager.login("kim", "wrong-pass")
    with pytest.raises(InvalidCredentials):
        await manager.login("nobody", "s3cret-pass")
    with pytest.raises(InvalidCredentials):
        await manager.login("federated_only", "anything")
    assert await gateway.list(Entity.SESSION) == []


@pytest.mark.asyncio
async def test_purge_expired_only_removes_expired(gateway: PersistenceGateway) -> None:
    manager = SessionManager(gateway)
    user = await manager.register("lou", "s3cret-pass")
    live = await manager.login("lou", "s3cret-pass")
    past = (datetime.now(UTC) - timedelta(minutes=1)).isoformat()
    await gateway.create(Entity.SESSION, {"user_id": user.id, "expires_at": past})

    assert await manager.purge_expired() == 1
    assert [s.id for s in await gateway.list(Entity.SESSION)] == [live.id]


@pytest.mark.asyncio
async def test_session_expiry_uses_the_shared_timestamp_format(gateway: PersistenceGateway) -> None:
    manager = SessionManager(gateway, ttl_seconds=60)
    await manager.register("mia", "s3cret-pass")

    session = await manager.login("mia", "s3cret-pass")

    assert session.expires_at.endswith("Z")
    assert session.expires_at == to_iso(parse_timestamp(session.expires_at))
    assert to_iso(datetime(2025, 1, 2, 3, 4, 5, 678000, tzinfo=UTC)) == "2025-01-02T03:04:05.678Z"
