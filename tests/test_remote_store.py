# tests/test_remote_store.py

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from taskbridge.errors import (
    ConfigError,
    ConflictError,
    PartialCascadeError,
    StorageUnavailable,
    ValidationError,
)
from taskbridge.gateway import PersistenceGateway
from taskbridge.models import Entity
from taskbridge.storage import select_backend
from taskbridge.storage.embedded import EmbeddedStore
from taskbridge.storage.remote import RemoteStore

from .conftest import REMOTE, make_settings, seed_project, seed_task, seed_user
from .fakes import SqliteD1Transport


async def _remote_gateway(transport: SqliteD1Transport, **settings_overrides) -> PersistenceGateway:
    gw = PersistenceGateway(RemoteStore(replace(REMOTE, **settings_overrides), transport=transport))
    await gw.open()
    return gw


@pytest.mark.asyncio
async def test_open_creates_schema_and_authenticates(d1: SqliteD1Transport) -> None:
    gw = await _remote_gateway(d1)

    tables = {r["name"] for r in d1.rows("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"users", "projects", "project_members", "tasks", "activity_log", "sessions"} <= tables
    assert d1.seen[0].url == (
        "https://remote.example.test/client/v4/accounts/acct-test/d1/database/db-test/query"
    )
    assert d1.seen[0].authorization == "Bearer token-test"

    # schema creation is idempotent
    await gw.open()
    await gw.close()


@pytest.mark.asyncio
async def test_booleans_are_integers_on_the_wire(d1: SqliteD1Transport) -> None:
    gw = await _remote_gateway(d1)
    user = await seed_user(gw, "flagged", is_admin=True)

    assert d1.rows("SELECT is_admin FROM users WHERE id = ?", (user.id,)) == [{"is_admin": 1}]
    assert (await gw.get_by_id(Entity.USER, user.id)).is_admin is True
    await gw.close()


@pytest.mark.asyncio
async def test_engine_constraint_errors_are_classified(d1: SqliteD1Transport) -> None:
    store = RemoteStore(REMOTE, transport=d1)
    await store.open()
    user_row = {
        "id": "u1", "username": "one", "name": "One", "email": None, "initials": "ON",
        "color": "#f06a6a", "is_admin": False, "created_at": "t", "updated_at": "t",
        "federated_subject": None, "password_hash": None,
    }
    await store.insert(Entity.USER, user_row)

    with pytest.raises(ConflictError):
        await store.insert(Entity.USER, {**user_row, "id": "u2"})
    with pytest.raises(ValidationError):
        await store.insert(
            Entity.PROJECT,
            {"id": "p1", "name": "x", "description": "", "color": "#f06a6a", "owner_id": "ghost",
             "is_personal": False, "created_at": "t", "updated_at": "t"},
        )
    await store.close()


@pytest.mark.asyncio
async def test_slow_engine_times_out_as_unavailable() -> None:
    slow = SqliteD1Transport(delay=0.5)
    store = RemoteStore(replace(REMOTE, timeout_seconds=0.05), transport=slow)

    with pytest.raises(StorageUnavailable):
        await store.fetch(Entity.USER)
    await store.close()


@pytest.mark.asyncio
async def test_overload_and_transport_errors_are_unavailable(d1: SqliteD1Transport) -> None:
    gw = await _remote_gateway(d1)

    d1.fail("unavailable", match="SELECT")
    with pytest.raises(StorageUnavailable):
        await gw.list(Entity.USER)

    d1.fail("timeout", match="SELECT")
    with pytest.raises(StorageUnavailable):
        await gw.list(Entity.USER)

    assert await gw.list(Entity.USER) == []
    await gw.close()


@pytest.mark.asyncio
async def test_cascade_survives_a_lost_response(d1: SqliteD1Transport) -> None:
    gw = await _remote_gateway(d1)
    user = await seed_user(gw, "lost")
    project = await seed_project(gw, user.id)
    await gw.add_member(project.id, user.id)
    await seed_task(gw, project.id, user.id)

    # the DELETE runs, but its answer never arrives
    d1.fail("lost", match="DELETE FROM projects")
    await gw.delete(Entity.PROJECT, project.id)

    assert d1.rows("SELECT COUNT(*) AS n FROM tasks") == [{"n": 0}]
    assert d1.rows("SELECT COUNT(*) AS n FROM project_members") == [{"n": 0}]
    await gw.close()


@pytest.mark.asyncio
async def test_unfinishable_cascade_raises_partial_and_repeat_completes(d1: SqliteD1Transport) -> None:
    gw = await _remote_gateway(d1)
    user = await seed_user(gw, "partial")
    project = await seed_project(gw, user.id)
    await seed_task(gw, project.id, user.id)

    d1.fail("timeout", match="DELETE FROM projects")
    d1.fail("unavailable", match="SELECT COUNT")
    with pytest.raises(PartialCascadeError) as excinfo:
        await gw.delete(Entity.PROJECT, project.id)
    assert excinfo.value.project_id == project.id

    await gw.delete(Entity.PROJECT, project.id)

    assert await gw.find(Entity.PROJECT, project.id) is None
    assert await gw.list(Entity.TASK) == []
    await gw.close()


@pytest.mark.asyncio
async def test_gateway_cleans_up_when_the_engine_does_not_cascade() -> None:
    no_fk = SqliteD1Transport(foreign_keys=False)
    gw = await _remote_gateway(no_fk)
    user = await seed_user(gw, "manual")
    project = await seed_project(gw, user.id)
    await gw.add_member(project.id, user.id)
    await seed_task(gw, project.id, user.id)

    await gw.delete(Entity.PROJECT, project.id)

    assert no_fk.rows("SELECT COUNT(*) AS n FROM tasks") == [{"n": 0}]
    assert no_fk.rows("SELECT COUNT(*) AS n FROM project_members") == [{"n": 0}]
    await gw.close()


def test_select_backend_follows_configuration(tmp_path: Path) -> None:
    assert isinstance(select_backend(make_settings(tmp_path)), EmbeddedStore)
    assert isinstance(select_backend(make_settings(tmp_path, remote=True)), RemoteStore)

    partial = replace(make_settings(tmp_path), remote_store=replace(REMOTE, api_token=""))
    with pytest.raises(ConfigError):
        select_backend(partial)
    with pytest.raises(ConfigError):
        PersistenceGateway.from_settings(partial)
