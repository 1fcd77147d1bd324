# tests/test_config.py

from __future__ import annotations

import os
from pathlib import Path

import pytest

from taskbridge.config import RemoteStoreSettings, Settings, load_settings
from taskbridge.errors import ConfigError


def test_defaults_select_the_embedded_store(clean_env: pytest.MonkeyPatch) -> None:
    s = Settings.from_env()

    assert s.remote_store is None
    assert s.backend_name == "embedded"
    assert s.data_dir == Path(".local/taskbridge")
    assert s.activity_cap == 500
    assert s.activity_query_limit == 50
    assert s.auth.audience == "authenticated"
    assert s.auth.token_issuer == "taskbridge"
    assert s.auth.jwks_url is None


def test_complete_remote_descriptor_selects_remote(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("TASKBRIDGE_REMOTE_ACCOUNT_ID", "acct")
    clean_env.setenv("TASKBRIDGE_REMOTE_DATABASE_ID", "db")
    clean_env.setenv("TASKBRIDGE_REMOTE_API_TOKEN", "tok")
    clean_env.setenv("TASKBRIDGE_REMOTE_TIMEOUT_SECONDS", "3.5")

    s = Settings.from_env()

    assert s.backend_name == "remote"
    assert s.remote_store.timeout_seconds == 3.5
    assert s.remote_store.query_url.endswith("/accounts/acct/d1/database/db/query")


def test_legacy_variable_names_are_accepted(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("CLOUDFLARE_ACCOUNT_ID", "acct")
    clean_env.setenv("CLOUDFLARE_D1_DATABASE_ID", "db")
    clean_env.setenv("CLOUDFLARE_API_TOKEN", "tok")
    clean_env.setenv("SUPABASE_URL", "https://proj.supabase.example/")
    clean_env.setenv("SUPABASE_JWT_SECRET", "s3cret")

    s = Settings.from_env()

    assert s.remote_store is not None
    assert s.auth.issuer == "https://proj.supabase.example/auth/v1"
    assert s.auth.jwks_url == "https://proj.supabase.example/auth/v1/jwks"
    assert s.auth.shared_secret == "s3cret"
    assert s.auth.token_issuer == s.auth.issuer


@pytest.mark.parametrize(
    "present",
    [
        ("TASKBRIDGE_REMOTE_ACCOUNT_ID",),
        ("TASKBRIDGE_REMOTE_ACCOUNT_ID", "TASKBRIDGE_REMOTE_API_TOKEN"),
        ("CLOUDFLARE_D1_DATABASE_ID",),
    ],
)
def test_partial_remote_descriptor_is_a_startup_error(
    clean_env: pytest.MonkeyPatch, present: tuple[str, ...]
) -> None:
    for name in present:
        clean_env.setenv(name, "x")

    with pytest.raises(ConfigError, match="partial"):
        Settings.from_env()


def test_malformed_numbers_are_config_errors(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("TASKBRIDGE_ACTIVITY_CAP", "lots")
    with pytest.raises(ConfigError):
        Settings.from_env()

    clean_env.setenv("TASKBRIDGE_ACTIVITY_CAP", "0")
    with pytest.raises(ConfigError):
        Settings.from_env()


def test_from_parts_rejects_non_positive_timeout() -> None:
    with pytest.raises(ConfigError):
        RemoteStoreSettings.from_parts(account_id="a", database_id="d", api_token="t", timeout_seconds=0)
    assert RemoteStoreSettings.from_parts(account_id=None, database_id="", api_token=None) is None


def test_load_settings_reads_dotenv(
    clean_env: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    # load_dotenv writes into os.environ; give it a copy the monkeypatch restores
    clean_env.setattr(os, "environ", dict(os.environ))
    (tmp_path / ".env").write_text("TASKBRIDGE_ACTIVITY_CAP=42\n", "utf-8")
    clean_env.chdir(tmp_path)

    assert load_settings().activity_cap == 42

    os.environ["TASKBRIDGE_ACTIVITY_CAP"] = "7"
    assert load_settings(env_file=tmp_path / ".env").activity_cap == 7
    assert load_settings(dotenv=False).activity_cap == 7
