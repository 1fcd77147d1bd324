# src/taskbridge/storage/remote.py

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

import httpx

from ..config import RemoteStoreSettings
from ..errors import ConflictError, StorageError, StorageUnavailable, ValidationError
from ..models import ENTITY_SPECS, Entity, EntitySpec
from ..ports import Filters, Row
from .schema import SCHEMA_STATEMENTS

logger = logging.getLogger(__name__)


def _is_unavailable_status(status: int) -> bool:
    return status == 429 or status >= 500


def _first_error_message(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    errors = body.get("errors") or []
    if errors and isinstance(errors[0], dict):
        msg = errors[0].get("message")
        return str(msg) if msg else None
    return None


def _classify_rejection(message: str) -> Exception:
    """Map an engine error message onto the core taxonomy."""
    upper = message.upper()
    if "UNIQUE CONSTRAINT" in upper:
        return ConflictError(message)
    if "FOREIGN KEY CONSTRAINT" in upper:
        return ValidationError(message)
    return StorageError(f"remote store rejected query: {message}")


class RemoteStore:
    """
    SQLite-compatible engine reached over authenticated HTTP.

    Each call posts one statement ({"sql", "params"}) and is bounded by a total
    timeout. Transient faults (timeouts, connection errors, HTTP 429/5xx) surface
    as StorageUnavailable; nothing is retried here.

    Memberships are normalized join rows; project deletion relies on ON DELETE CASCADE.
    """

    name = "remote"

    def __init__(
        self,
        settings: RemoteStoreSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._timeout_s = float(settings.timeout_seconds)
        self._client = httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {settings.api_token}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(self._timeout_s),
            transport=transport,
        )

    async def open(self) -> None:
        for stmt in SCHEMA_STATEMENTS:
            await self.query(stmt)
        logger.info("RemoteStore ready database=%s", self._settings.database_id)

    async def close(self) -> None:
        await self._client.aclose()

    # ---- low-level helpers ----

    async def query(self, sql: str, params: Sequence[Any] = ()) -> tuple[list[Row], int]:
        """Run one statement; returns (result rows, changed row count)."""
        payload = {"sql": sql, "params": list(params)}
        try:
            resp = await asyncio.wait_for(
                self._client.post(self._settings.query_url, json=payload),
                timeout=self._timeout_s,
            )
        except (TimeoutError, httpx.TimeoutException) as exc:
            logger.warning("RemoteStore timeout after %.1fs", self._timeout_s)
            raise StorageUnavailable(f"remote store timed out after {self._timeout_s:.1f}s") from exc
        except httpx.TransportError as exc:
            logger.warning("RemoteStore transport error: %s", exc)
            raise StorageUnavailable(f"remote store unreachable: {exc}") from exc

        if _is_unavailable_status(resp.status_code):
            raise StorageUnavailable(f"remote store returned HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise StorageError(f"remote store returned non-JSON (HTTP {resp.status_code})") from exc

        if not isinstance(body, dict) or not body.get("success"):
            message = _first_error_message(body) or f"HTTP {resp.status_code}"
            logger.debug("RemoteStore rejected sql=%s message=%s", sql.split()[0], message)
            raise _classify_rejection(message)

        results = body.get("result") or [{}]
        first = results[0] if isinstance(results[0], dict) else {}
        rows = [dict(r) for r in (first.get("results") or [])]
        meta = first.get("meta") or {}
        return rows, int(meta.get("changes") or 0)

    @staticmethod
    def _spec(entity: Entity) -> EntitySpec:
        if entity not in ENTITY_SPECS:
            raise ValidationError(f"unknown entity {entity!r}")
        return ENTITY_SPECS[entity]

    @staticmethod
    def _column(spec: EntitySpec, name: str) -> str:
        # Column names come from the entity description, never from callers verbatim.
        if name not in spec.fields:
            raise ValidationError(f"{spec.entity.value} has no field {name!r}")
        return name

    @staticmethod
    def _encode(spec: EntitySpec, name: str, value: Any) -> Any:
        if name in spec.bool_fields and value is not None:
            return 1 if value else 0
        return value

    def _where(self, spec: EntitySpec, filters: Filters | None) -> tuple[str, list[Any]]:
        if not filters:
            return "", []
        parts: list[str] = []
        params: list[Any] = []
        for name, value in filters.items():
            col = self._column(spec, name)
            if value is None:
                parts.append(f"{col} IS NULL")
            else:
                parts.append(f"{col} = ?")
                params.append(self._encode(spec, name, value))
        return " WHERE " + " AND ".join(parts), params

    @staticmethod
    def _decode(spec: EntitySpec, row: Row) -> Row:
        out = {k: row.get(k) for k in spec.fields}
        for name in spec.bool_fields:
            out[name] = bool(out.get(name))
        return out

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
        spec = self._spec(entity)
        where, params = self._where(spec, filters)
        direction = "DESC" if descending else "ASC"
        order = f"rowid {direction}"
        if order_by:
            order = f"{self._column(spec, order_by)} {direction}, {order}"
        sql = f"SELECT {', '.join(spec.fields)} FROM {spec.entity.value}{where} ORDER BY {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(0, int(limit)))
        rows, _ = await self.query(sql, params)
        return [self._decode(spec, r) for r in rows]

    async def count(self, entity: Entity, filters: Filters | None = None) -> int:
        spec = self._spec(entity)
        where, params = self._where(spec, filters)
        rows, _ = await self.query(f"SELECT COUNT(*) AS n FROM {spec.entity.value}{where}", params)
        return int(rows[0]["n"]) if rows else 0

    async def insert(self, entity: Entity, row: Row) -> None:
        spec = self._spec(entity)
        cols = [self._column(spec, k) for k in row]
        params = [self._encode(spec, k, row[k]) for k in row]
        placeholders = ", ".join("?" for _ in cols)
        await self.query(
            f"INSERT INTO {spec.entity.value} ({', '.join(cols)}) VALUES ({placeholders})",
            params,
        )

    async def patch(self, entity: Entity, key: Filters, changes: Row) -> int:
        if not changes:
            return 0
        spec = self._spec(entity)
        sets = [f"{self._column(spec, k)} = ?" for k in changes]
        params = [self._encode(spec, k, v) for k, v in changes.items()]
        where, where_params = self._where(spec, key)
        _, n = await self.query(
            f"UPDATE {spec.entity.value} SET {', '.join(sets)}{where}",
            params + where_params,
        )
        return n

    async def remove(self, entity: Entity, filters: Filters) -> int:
        spec = self._spec(entity)
        where, params = self._where(spec, filters)
        _, n = await self.query(f"DELETE FROM {spec.entity.value}{where}", params)
        return n

    async def delete_project_cascade(self, project_id: str) -> None:
        # project_members and tasks follow via ON DELETE CASCADE
        _, n = await self.query("DELETE FROM projects WHERE id = ?", [project_id])
        logger.debug("RemoteStore cascade project=%s deleted=%d", project_id, n)

    async def evict_oldest_activity(self, keep: int) -> int:
        _, n = await self.query(
            """
            DELETE FROM activity_log
            WHERE rowid NOT IN (
                SELECT rowid FROM activity_log
                ORDER BY rowid DESC
                LIMIT ?
            )
            """,
            [max(0, int(keep))],
        )
        return n

    def describe(self) -> dict[str, Any]:
        return {
            "backend": self.name,
            "database_id": self._settings.database_id,
            "timeout_seconds": self._timeout_s,
        }
