# src/taskbridge/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole process, built once by the composition root.
- Nothing is read at import time.
- Remote-store settings are all-or-nothing: a partial descriptor is a startup error.
- Legacy variable names from older deployments are accepted as fallbacks.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError

ENV_PREFIX = "TASKBRIDGE"

DEFAULT_REMOTE_API_BASE = "https://api.cloudflare.com/client/v4"
DEFAULT_AUDIENCE = "authenticated"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v.strip()
    return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class RemoteStoreSettings:
    account_id: str
    database_id: str
    api_token: str
    api_base: str = DEFAULT_REMOTE_API_BASE
    timeout_seconds: float = 10.0

    @property
    def query_url(self) -> str:
        base = self.api_base.rstrip("/")
        return f"{base}/accounts/{self.account_id}/d1/database/{self.database_id}/query"

    @classmethod
    def from_parts(
        cls,
        *,
        account_id: str | None,
        database_id: str | None,
        api_token: str | None,
        api_base: str = DEFAULT_REMOTE_API_BASE,
        timeout_seconds: float = 10.0,
    ) -> RemoteStoreSettings | None:
        """
        None when no part is present; a value when all three are present.

        Anything in between is a configuration error: the remote descriptor is a unit.
        """
        parts = {
            "account_id": (account_id or "").strip(),
            "database_id": (database_id or "").strip(),
            "api_token": (api_token or "").strip(),
        }
        present = [k for k, v in parts.items() if v]
        if not present:
            return None
        if len(present) != len(parts):
            missing = sorted(set(parts) - set(present))
            raise ConfigError(
                "remote store configuration is partial; missing: " + ", ".join(missing)
            )
        if timeout_seconds <= 0:
            raise ConfigError("remote store timeout must be positive")
        return cls(api_base=api_base, timeout_seconds=float(timeout_seconds), **parts)


@dataclass(frozen=True, slots=True)
class AuthSettings:
    # Federated provider (all optional; without an issuer the key-set strategy is skipped)
    issuer: str | None = None
    audience: str = DEFAULT_AUDIENCE
    jwks_url: str | None = None
    jwks_cache_seconds: int = 600

    # Pre-shared symmetric secret (fallback verification + local tokens)
    shared_secret: str | None = None
    local_issuer: str = "taskbridge"

    token_ttl_seconds: int = 24 * 60 * 60
    session_ttl_seconds: int = 7 * 24 * 60 * 60
    session_cookie: str = "session_id"

    @property
    def token_issuer(self) -> str:
        """Issuer stamped into (and expected from) symmetric tokens."""
        return self.issuer or self.local_issuer


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Storage ----
    data_dir: Path
    remote_store: RemoteStoreSettings | None

    # ---- Identity ----
    auth: AuthSettings

    # ---- Activity log ----
    activity_cap: int = 500
    activity_query_limit: int = 50
    activity_trim_interval_seconds: float = 0.0

    @property
    def backend_name(self) -> str:
        return "remote" if self.remote_store is not None else "embedded"

    @staticmethod
    def from_env() -> Settings:
        app_name = _env(_k("APP_NAME"), "taskbridge")
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskbridge"))

        remote_store = RemoteStoreSettings.from_parts(
            account_id=_first_env(_k("REMOTE_ACCOUNT_ID"), "CLOUDFLARE_ACCOUNT_ID"),
            database_id=_first_env(_k("REMOTE_DATABASE_ID"), "CLOUDFLARE_D1_DATABASE_ID"),
            api_token=_first_env(_k("REMOTE_API_TOKEN"), "CLOUDFLARE_API_TOKEN"),
            api_base=_env(_k("REMOTE_API_BASE"), DEFAULT_REMOTE_API_BASE),
            timeout_seconds=_env_float(_k("REMOTE_TIMEOUT_SECONDS"), 10.0),
        )

        # Provider URL (e.g. a Supabase project) implies issuer and key-set location.
        provider_url = _first_env(_k("AUTH_PROVIDER_URL"), "SUPABASE_URL")
        issuer = _first_env(_k("AUTH_ISSUER"))
        if issuer is None and provider_url:
            issuer = provider_url.rstrip("/") + "/auth/v1"
        jwks_url = _first_env(_k("AUTH_JWKS_URL"))
        if jwks_url is None and issuer:
            jwks_url = issuer.rstrip("/") + "/jwks"

        auth = AuthSettings(
            issuer=issuer,
            audience=_env(_k("AUTH_AUDIENCE"), DEFAULT_AUDIENCE),
            jwks_url=jwks_url,
            jwks_cache_seconds=_env_int(_k("AUTH_JWKS_CACHE_SECONDS"), 600),
            shared_secret=_first_env(_k("AUTH_SHARED_SECRET"), "SUPABASE_JWT_SECRET"),
            local_issuer=_env(_k("AUTH_LOCAL_ISSUER"), app_name),
            token_ttl_seconds=_env_int(_k("AUTH_TOKEN_TTL_SECONDS"), 24 * 60 * 60),
            session_ttl_seconds=_env_int(_k("AUTH_SESSION_TTL_SECONDS"), 7 * 24 * 60 * 60),
            session_cookie=_env(_k("AUTH_SESSION_COOKIE"), "session_id"),
        )

        activity_cap = _env_int(_k("ACTIVITY_CAP"), 500)
        if activity_cap < 1:
            raise ConfigError("activity cap must be at least 1")

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            remote_store=remote_store,
            auth=auth,
            activity_cap=activity_cap,
            activity_query_limit=_env_int(_k("ACTIVITY_QUERY_LIMIT"), 50),
            activity_trim_interval_seconds=_env_float(_k("ACTIVITY_TRIM_INTERVAL_SECONDS"), 0.0),
        )


def load_settings(*, dotenv: bool = True, env_file: str | Path | None = None) -> Settings:
    """
    Resolve settings once, at process start.

    Real environment variables win over the .env file (default: ./.env or a parent).
    Raises ConfigError on partial or malformed configuration, before anything is served.
    """
    if dotenv:
        load_dotenv(env_file or find_dotenv(usecwd=True), override=False)
    return Settings.from_env()
