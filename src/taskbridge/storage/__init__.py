"""
Storage backends.

Components:
- embedded.py: JSON files under a local directory (memberships inline on projects)
- remote.py: SQLite-compatible engine over authenticated HTTP (normalized join rows)
- schema.py: DDL for the remote engine

Both implement ports.StorageBackend; only the gateway talks to them.
"""

from __future__ import annotations

from ..config import Settings
from ..errors import ConfigError
from ..ports import StorageBackend
from .embedded import EmbeddedStore
from .remote import RemoteStore


def select_backend(settings: Settings, *, transport=None) -> StorageBackend:
    """
    Pick exactly one backend from configuration.

    Remote when the remote descriptor is complete, embedded when it is absent.
    """
    remote = getattr(settings, "remote_store", None)
    if remote is None:
        return EmbeddedStore(settings.data_dir)
    for part in ("account_id", "database_id", "api_token"):
        if not str(getattr(remote, part, "") or "").strip():
            raise ConfigError(f"remote store configuration is partial; missing: {part}")
    return RemoteStore(remote, transport=transport)


__all__ = ["EmbeddedStore", "RemoteStore", "select_backend"]
