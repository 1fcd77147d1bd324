# tests/test_cli.py

from __future__ import annotations

import json
from pathlib import Path

import pytest

from taskbridge.cli import main as cli_main
from taskbridge.cli.migrate import migrate_directory
from taskbridge.gateway import PersistenceGateway
from taskbridge.models import Entity
from taskbridge.storage.embedded import EmbeddedStore
from taskbridge.storage.remote import RemoteStore

from .conftest import REMOTE, seed_project, seed_task, seed_user
from .fakes import SqliteD1Transport


@pytest.fixture()
def cli_env(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    data_dir = tmp_path / "data"
    clean_env.setenv("TASKBRIDGE_DATA_DIR", str(data_dir))
    clean_env.setattr(cli_main, "setup_logging", lambda **_kwargs: None)
    return data_dir


def test_check_config_reports_embedded_backend(cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli_main.main(["--no-dotenv", "check-config", "--connect"])

    assert code == 0
    info = json.loads(capsys.readouterr().out)
    assert info["backend"] == "embedded"
    assert info["data_dir"] == str(cli_env)
    assert (cli_env / "users.json").exists()


def test_partial_remote_configuration_fails_fast(
    cli_env: Path, clean_env: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    clean_env.setenv("TASKBRIDGE_REMOTE_ACCOUNT_ID", "acct")

    assert cli_main.main(["--no-dotenv", "check-config"]) == 2
    assert "partial" in capsys.readouterr().err


def test_create_admin_then_activity(cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_main.main(["--no-dotenv", "create-admin", "root", "--password", "s3cret-pass"]) == 0
    assert "created admin root" in capsys.readouterr().out

    users = json.loads((cli_env / "users.json").read_text("utf-8"))
    assert users[0]["is_admin"] is True

    assert cli_main.main(["--no-dotenv", "activity", "--limit", "5"]) == 0
    out = capsys.readouterr().out
    assert "user_created" in out
    assert "project_created" in out

    # same username again is a reported error, not a crash
    assert cli_main.main(["--no-dotenv", "create-admin", "root", "--password", "s3cret-pass"]) == 1


def test_purge_sessions_and_migrate_guard(cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_main.main(["--no-dotenv", "purge-sessions"]) == 0
    assert "purged 0" in capsys.readouterr().out

    # the embedded store cannot be a migration target
    assert cli_main.main(["--no-dotenv", "migrate", "--from-dir", str(cli_env)]) == 1


@pytest.mark.asyncio
async def test_migrate_directory_copies_everything_once(tmp_path: Path) -> None:
    source = PersistenceGateway(EmbeddedStore(tmp_path / "old"))
    await source.open()
    owner = await seed_user(source, "owner", email="owner@example.com")
    helper = await seed_user(source, "helper")
    project = await seed_project(source, owner.id)
    await source.add_member(project.id, helper.id)
    task = await seed_task(source, project.id, owner.id, assigned_to_id=helper.id, status="completed")

    d1 = SqliteD1Transport()
    target = PersistenceGateway(RemoteStore(REMOTE, transport=d1))
    await target.open()

    report = await migrate_directory(tmp_path / "old", target)

    assert report["users"]["copied"] == 2
    assert report["tasks"]["copied"] == 1
    assert report["project_members"]["copied"] == 1
    copied = await target.get_by_id(Entity.TASK, task.id)
    assert copied.completed_at == task.completed_at
    assert copied.created_at == task.created_at
    assert len(await target.recent_activity(100)) == len(await source.recent_activity(100))

    again = await migrate_directory(tmp_path / "old", target)
    assert again["users"]["skipped"] == 2
    assert again["activity_log"]["copied"] == 0
    assert len(await target.list(Entity.USER)) == 2
    await target.close()


@pytest.mark.asyncio
async def test_migrate_reports_username_clash_as_rejected(tmp_path: Path) -> None:
    source = PersistenceGateway(EmbeddedStore(tmp_path / "old"))
    await source.open()
    await seed_user(source, "nina")

    target = PersistenceGateway(RemoteStore(REMOTE, transport=SqliteD1Transport()))
    await target.open()
    existing = await seed_user(target, "nina")

    report = await migrate_directory(tmp_path / "old", target)

    assert report["users"]["rejected"] == 1
    assert report["users"]["skipped"] == 0
    assert [u.id for u in await target.list(Entity.USER)] == [existing.id]
    await target.close()
