# src/taskbridge/storage/embedded.py

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from collections.abc import AsyncIterator, Iterable
from pathlib import Path
from typing import Any

from ..errors import ConflictError, StorageError, ValidationError
from ..models import ENTITY_SPECS, Entity
from ..ports import Filters, Row

logger = logging.getLogger(__name__)

_FILES: dict[Entity, str] = {
    Entity.USER: "users.json",
    Entity.PROJECT: "projects.json",
    Entity.TASK: "tasks.json",
    Entity.ACTIVITY: "activity.json",
    Entity.SESSION: "sessions.json",
}

# Multi-file operations acquire file locks in this order.
_LOCK_ORDER: tuple[Entity, ...] = (
    Entity.USER,
    Entity.PROJECT,
    Entity.TASK,
    Entity.ACTIVITY,
    Entity.SESSION,
)


def _matches(row: Row, filters: Filters | None) -> bool:
    if not filters:
        return True
    return all(row.get(k) == v for k, v in filters.items())


def _sorted(rows: list[Row], order_by: str | None, descending: bool) -> list[Row]:
    if descending:
        # ties keep reverse insertion order (newest first), like ORDER BY x DESC, rowid DESC
        rows = list(reversed(rows))
    if order_by:
        # NULL sorts below every value, as in SQLite
        rows.sort(key=lambda r: (r.get(order_by) is not None, r.get(order_by)), reverse=descending)
    return rows


class EmbeddedStore:
    """
    JSON-file store, one file per table under data_dir.

    Memberships have no file of their own: each project row keeps an inline
    `members` array of {user_id, role, added_at}. Older files stored bare user
    ids there; those are translated on read.

    Concurrency:
    - every read-modify-write of a file runs under that file's asyncio.Lock
    - file I/O runs in a worker thread; writes go to a temp file + os.replace

    I/O failures are fatal for the process: they are logged and raised as StorageError.
    """

    name = "embedded"

    def __init__(self, data_dir: str | Path) -> None:
        self._dir = Path(data_dir)
        self._locks: dict[Entity, asyncio.Lock] = {e: asyncio.Lock() for e in _FILES}

    @property
    def data_dir(self) -> Path:
        return self._dir

    async def open(self) -> None:
        await asyncio.to_thread(self._ensure_files)
        logger.info("EmbeddedStore ready dir=%s", self._dir)

    async def close(self) -> None:
        """Compatibility hook for shutdown (no handles are kept open)."""
        return

    # ---- low-level helpers ----

    def _path(self, entity: Entity) -> Path:
        return self._dir / _FILES[entity]

    def _ensure_files(self) -> None:
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            for entity in _FILES:
                path = self._path(entity)
                if not path.exists():
                    self._write_file(entity, [])
                    logger.info("EmbeddedStore created %s", path.name)
        except OSError as exc:
            logger.critical("EmbeddedStore cannot initialise %s", self._dir, exc_info=True)
            raise StorageError(f"cannot initialise embedded store at {self._dir}") from exc

    def _read_file(self, entity: Entity) -> list[Row]:
        path = self._path(entity)
        try:
            data = json.loads(path.read_text("utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as exc:
            logger.critical("EmbeddedStore failed to read %s", path, exc_info=True)
            raise StorageError(f"cannot read {path}") from exc
        if not isinstance(data, list):
            logger.critical("EmbeddedStore file %s does not hold a list", path)
            raise StorageError(f"{path} is not a JSON array")
        return [r for r in data if isinstance(r, dict)]

    def _write_file(self, entity: Entity, rows: list[Row]) -> None:
        path = self._path(entity)
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(rows, ensure_ascii=False, indent=2), "utf-8")
            os.replace(tmp, path)
        except (OSError, TypeError, ValueError) as exc:
            logger.critical("EmbeddedStore failed to write %s", path, exc_info=True)
            raise StorageError(f"cannot write {path}") from exc

    async def _load(self, entity: Entity) -> list[Row]:
        return await asyncio.to_thread(self._read_file, entity)

    async def _save(self, entity: Entity, rows: list[Row]) -> None:
        await asyncio.to_thread(self._write_file, entity, rows)

    @contextlib.asynccontextmanager
    async def _locked(self, *entities: Entity) -> AsyncIterator[None]:
        async with contextlib.AsyncExitStack() as stack:
            for e in sorted(set(entities), key=_LOCK_ORDER.index):
                await stack.enter_async_context(self._locks[e])
            yield

    @staticmethod
    def _members_of(project: Row) -> list[Row]:
        out: list[Row] = []
        for m in project.get("members") or []:
            if isinstance(m, str):
                out.append({"user_id": m, "role": "member", "added_at": project.get("created_at")})
            elif isinstance(m, dict) and m.get("user_id"):
                out.append(
                    {
                        "user_id": m["user_id"],
                        "role": m.get("role") or "member",
                        "added_at": m.get("added_at") or project.get("created_at"),
                    }
                )
        return out

    @staticmethod
    def _project_view(project: Row) -> Row:
        return {k: v for k, v in project.items() if k != "members"}

    def _membership_rows(self, projects: Iterable[Row]) -> list[Row]:
        return [
            {"project_id": p.get("id"), **m}
            for p in projects
            for m in self._members_of(p)
        ]

    async def _logical_rows(self, entity: Entity) -> list[Row]:
        if entity is Entity.MEMBERSHIP:
            return self._membership_rows(await self._load(Entity.PROJECT))
        rows = await self._load(entity)
        if entity is Entity.PROJECT:
            return [self._project_view(p) for p in rows]
        return rows

    @staticmethod
    def _check_unique(entity: Entity, rows: list[Row], candidate: Row, skip: Row | None = None) -> None:
        spec = ENTITY_SPECS[entity]
        for fields in (spec.key, *spec.unique):
            values = tuple(candidate.get(f) for f in fields)
            if any(v is None for v in values):
                continue
            for r in rows:
                if r is skip:
                    continue
                if tuple(r.get(f) for f in fields) == values:
                    raise ConflictError(
                        f"{entity.value}: duplicate {', '.join(fields)} {values!r}"
                    )

    # ---- public API ----

    async def fetch(
        self,
        entity: Entity,
        filters: Filters | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        rows = [dict(r) for r in await self._logical_rows(entity) if _matches(r, filters)]
        rows = _sorted(rows, order_by, descending)
        if limit is not None:
            rows = rows[: max(0, int(limit))]
        return rows

    async def count(self, entity: Entity, filters: Filters | None = None) -> int:
        return len(await self.fetch(entity, filters))

    async def insert(self, entity: Entity, row: Row) -> None:
        if entity is Entity.MEMBERSHIP:
            await self._insert_member(row)
            return

        async with self._locked(entity):
            rows = await self._load(entity)
            self._check_unique(entity, rows, row)
            stored = dict(row)
            if entity is Entity.PROJECT:
                stored["members"] = []
            rows.append(stored)
            await self._save(entity, rows)
        logger.debug("EmbeddedStore insert %s key=%s", entity.value, ENTITY_SPECS[entity].key_of(row))

    async def _insert_member(self, row: Row) -> None:
        async with self._locked(Entity.PROJECT):
            projects = await self._load(Entity.PROJECT)
            project = next((p for p in projects if p.get("id") == row.get("project_id")), None)
            if project is None:
                raise ValidationError(f"project {row.get('project_id')} does not exist")
            members = self._members_of(project)
            if any(m["user_id"] == row.get("user_id") for m in members):
                raise ConflictError(
                    f"user {row.get('user_id')} is already a member of project {row.get('project_id')}"
                )
            members.append(
                {"user_id": row["user_id"], "role": row.get("role") or "member", "added_at": row.get("added_at")}
            )
            project["members"] = members
            await self._save(Entity.PROJECT, projects)

    async def patch(self, entity: Entity, key: Filters, changes: Row) -> int:
        if entity is Entity.MEMBERSHIP:
            return await self._patch_member(key, changes)

        async with self._locked(entity):
            rows = await self._load(entity)
            changed = 0
            for r in rows:
                if not _matches(r, key):
                    continue
                self._check_unique(entity, rows, {**r, **changes}, skip=r)
                r.update(changes)
                changed += 1
            if changed:
                await self._save(entity, rows)
            return changed

    async def _patch_member(self, key: Filters, changes: Row) -> int:
        async with self._locked(Entity.PROJECT):
            projects = await self._load(Entity.PROJECT)
            changed = 0
            for p in projects:
                if p.get("id") != key.get("project_id"):
                    continue
                members = self._members_of(p)
                for m in members:
                    if m["user_id"] == key.get("user_id"):
                        m.update({k: v for k, v in changes.items() if k in ("role", "added_at")})
                        changed += 1
                p["members"] = members
            if changed:
                await self._save(Entity.PROJECT, projects)
            return changed

    async def remove(self, entity: Entity, filters: Filters) -> int:
        if entity is Entity.MEMBERSHIP:
            return await self._remove_members(filters)

        async with self._locked(entity):
            rows = await self._load(entity)
            kept = [r for r in rows if not _matches(r, filters)]
            removed = len(rows) - len(kept)
            if removed:
                await self._save(entity, kept)
            return removed

    async def _remove_members(self, filters: Filters) -> int:
        async with self._locked(Entity.PROJECT):
            projects = await self._load(Entity.PROJECT)
            removed = 0
            for p in projects:
                members = self._members_of(p)
                kept = [m for m in members if not _matches({"project_id": p.get("id"), **m}, filters)]
                if len(kept) != len(members):
                    removed += len(members) - len(kept)
                    p["members"] = kept
            if removed:
                await self._save(Entity.PROJECT, projects)
            return removed

    async def delete_project_cascade(self, project_id: str) -> None:
        # No native constraints here: the project (with its inline members) and its
        # tasks are removed explicitly, holding both file locks.
        async with self._locked(Entity.PROJECT, Entity.TASK):
            projects = await self._load(Entity.PROJECT)
            tasks = await self._load(Entity.TASK)
            kept_projects = [p for p in projects if p.get("id") != project_id]
            kept_tasks = [t for t in tasks if t.get("project_id") != project_id]
            if len(kept_projects) != len(projects):
                await self._save(Entity.PROJECT, kept_projects)
            if len(kept_tasks) != len(tasks):
                await self._save(Entity.TASK, kept_tasks)
            logger.debug(
                "EmbeddedStore cascade project=%s projects=%d tasks=%d",
                project_id,
                len(projects) - len(kept_projects),
                len(tasks) - len(kept_tasks),
            )

    async def evict_oldest_activity(self, keep: int) -> int:
        keep = max(0, int(keep))
        async with self._locked(Entity.ACTIVITY):
            rows = await self._load(Entity.ACTIVITY)
            excess = len(rows) - keep
            if excess <= 0:
                return 0
            await self._save(Entity.ACTIVITY, rows[excess:])
            return excess

    def describe(self) -> dict[str, Any]:
        return {"backend": self.name, "data_dir": str(self._dir)}
