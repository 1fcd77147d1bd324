# src/taskbridge/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The gateway depends on this Protocol instead of concrete backends, so the
embedded and remote stores are swappable and tests can substitute fakes.

Rows are plain dicts keyed by the persisted field names of models.EntitySpec.
Each backend owns the translation between these rows and its physical layout
(inline member arrays on disk, normalized join rows in SQL, 0/1 booleans...).
"""

from collections.abc import Mapping
from typing import Any, Protocol

from .models import Entity

Row = dict[str, Any]
Filters = Mapping[str, Any]


class StorageBackend(Protocol):
    name: str

    async def open(self) -> None: ...
    async def close(self) -> None: ...

    async def fetch(
            self,
            entity: Entity,
            filters: Filters | None = None,
            *,
            order_by: str | None = None,
            descending: bool = False,
            limit: int | None = None,
    ) -> list[Row]:
        """Equality-filtered rows; a None filter value matches null/missing."""
        ...

    async def count(self, entity: Entity, filters: Filters | None = None) -> int: ...

    async def insert(self, entity: Entity, row: Row) -> None:
        """Raises ConflictError on key/unique collisions."""
        ...

    async def patch(self, entity: Entity, key: Filters, changes: Row) -> int:
        """Update the row identified by key; returns the number of rows changed."""
        ...

    async def remove(self, entity: Entity, filters: Filters) -> int: ...

    async def delete_project_cascade(self, project_id: str) -> None:
        """Delete a project with its memberships and tasks, natively or explicitly."""
        ...

    async def evict_oldest_activity(self, keep: int) -> int:
        """Evict activity rows in insertion order (oldest inserted first) so at most `keep` remain; returns evicted count."""
        ...
