# tests/conftest.py

from __future__ import annotations

import os
from pathlib import Path

import pytest
import pytest_asyncio

from taskbridge.config import AuthSettings, RemoteStoreSettings, Settings
from taskbridge.gateway import PersistenceGateway
from taskbridge.models import Entity
from taskbridge.storage.embedded import EmbeddedStore
from taskbridge.storage.remote import RemoteStore

from .fakes import SqliteD1Transport

BACKENDS = ("embedded", "remote")

ISSUER = "https://auth.example.test/auth/v1"
JWKS_URL = ISSUER + "/jwks"
SHARED_SECRET = "unit-test-shared-secret-with-enough-entropy-0123456789"

REMOTE = RemoteStoreSettings(
    account_id="acct-test",
    database_id="db-test",
    api_token="token-test",
    api_base="https://remote.example.test/client/v4",
    timeout_seconds=2.0,
)

_LEGACY_ENV = (
    "CLOUDFLARE_ACCOUNT_ID",
    "CLOUDFLARE_D1_DATABASE_ID",
    "CLOUDFLARE_API_TOKEN",
    "SUPABASE_URL",
    "SUPABASE_JWT_SECRET",
)


def make_settings(tmp_path: Path, *, remote: bool = False, activity_cap: int = 500, **auth) -> Settings:
    """
    Real Settings built directly (no environment reads), so tests stay deterministic.
    """
    auth_kwargs = {"issuer": ISSUER, "jwks_url": JWKS_URL, "shared_secret": SHARED_SECRET}
    auth_kwargs.update(auth)
    return Settings(
        app_name="taskbridge-test",
        log_level="DEBUG",
        data_dir=tmp_path / "data",
        remote_store=REMOTE if remote else None,
        auth=AuthSettings(**auth_kwargs),
        activity_cap=activity_cap,
    )


async def seed_user(gateway: PersistenceGateway, username: str, **extra):
    return await gateway.create(Entity.USER, {"username": username, "name": username.title(), **extra})


async def seed_project(gateway: PersistenceGateway, owner_id: str, name: str = "Alpha", **extra):
    return await gateway.create(Entity.PROJECT, {"name": name, "owner_id": owner_id, **extra})


async def seed_task(gateway: PersistenceGateway, project_id: str, created_by_id: str, name: str = "Task", **extra):
    return await gateway.create(
        Entity.TASK,
        {"name": name, "project_id": project_id, "created_by_id": created_by_id, **extra},
    )


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove every variable the config layer reads."""
    for name in list(os.environ):
        if name.startswith("TASKBRIDGE_") or name in _LEGACY_ENV:
            monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture()
def d1() -> SqliteD1Transport:
    return SqliteD1Transport()


@pytest_asyncio.fixture(params=BACKENDS)
async def make_gateway(request: pytest.FixtureRequest, tmp_path: Path, d1: SqliteD1Transport):
    """
    Factory for opened gateways over one backend kind (the fixture is parametrized).

    Every gateway made by one test shares the same storage.
    """
    opened: list[PersistenceGateway] = []

    async def _make(**kwargs) -> PersistenceGateway:
        if request.param == "embedded":
            backend = EmbeddedStore(tmp_path / "data")
        else:
            backend = RemoteStore(REMOTE, transport=d1)
        gw = PersistenceGateway(backend, **kwargs)
        await gw.open()
        opened.append(gw)
        return gw

    yield _make

    for gw in opened:
        await gw.close()


@pytest_asyncio.fixture()
async def gateway(make_gateway) -> PersistenceGateway:
    return await make_gateway()
