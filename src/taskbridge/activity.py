# src/taskbridge/activity.py

from __future__ import annotations

"""
Bounded audit trail.

Every mutation the gateway performs is described by one ActivityRecord.
Storage is capped: once the count exceeds the cap the oldest rows are evicted
(FIFO), uniformly on both backends.

`record()` is best-effort: a failure is logged and swallowed so it can never
fail or roll back the mutation it describes. `append()` is the raising variant
used when a caller explicitly creates an activity entry.
"""

import asyncio
import logging

from .errors import ValidationError
from .models import ActivityRecord, Entity, from_row, generate_id, to_row, utc_now_iso
from .ports import StorageBackend

logger = logging.getLogger(__name__)

DETAILS_MAX = 2000


class ActivityRecorder:
    def __init__(self, backend: StorageBackend, *, cap: int = 500, query_limit: int = 50) -> None:
        if cap < 1:
            raise ValueError("activity cap must be at least 1")
        self._backend = backend
        self._cap = int(cap)
        self._query_limit = int(query_limit)
        # append + evict is one unit, so concurrent appends never overshoot the cap
        self._lock = asyncio.Lock()

    @property
    def cap(self) -> int:
        return self._cap

    async def append(
        self,
        *,
        action: str,
        details: str = "",
        actor_id: str | None = None,
        task_id: str | None = None,
        project_id: str | None = None,
        record_id: str | None = None,
        timestamp: str | None = None,
    ) -> ActivityRecord:
        """Insert one record and enforce the cap. id/timestamp are only passed by imports."""
        action = (action or "").strip()
        if not action:
            raise ValidationError("activity action is required")

        record = ActivityRecord(
            id=record_id or generate_id("activity"),
            action=action,
            details=str(details or "")[:DETAILS_MAX],
            timestamp=timestamp or utc_now_iso(),
            actor_id=actor_id,
            task_id=task_id,
            project_id=project_id,
        )
        async with self._lock:
            await self._backend.insert(Entity.ACTIVITY, to_row(record))
            evicted = await self._backend.evict_oldest_activity(self._cap)
        if evicted:
            logger.debug("Activity log evicted %d oldest record(s) cap=%d", evicted, self._cap)
        return record

    async def record(
        self,
        action: str,
        details: str = "",
        *,
        actor_id: str | None = None,
        task_id: str | None = None,
        project_id: str | None = None,
    ) -> ActivityRecord | None:
        try:
            return await self.append(
                action=action,
                details=details,
                actor_id=actor_id,
                task_id=task_id,
                project_id=project_id,
            )
        except Exception:
            logger.warning("Activity record failed action=%s", action, exc_info=True)
            return None

    async def recent(self, limit: int | None = None) -> list[ActivityRecord]:
        """Newest first."""
        n = self._query_limit if limit is None else int(limit)
        rows = await self._backend.fetch(
            Entity.ACTIVITY, order_by="timestamp", descending=True, limit=n
        )
        return [from_row(Entity.ACTIVITY, r) for r in rows]

    async def trim(self) -> int:
        async with self._lock:
            return await self._backend.evict_oldest_activity(self._cap)


async def run_activity_trimmer(recorder: ActivityRecorder, *, interval_seconds: float = 300.0) -> None:
    """
    Periodic cap enforcement (useful when other writers append to a shared remote log).

    To stop the trimmer, cancel the coroutine/task.
    """
    sleep_s = max(0.01, float(interval_seconds))
    while True:
        try:
            evicted = await recorder.trim()
            if evicted:
                logger.info("Activity trimmer evicted %d record(s)", evicted)
        except Exception:
            logger.warning("Activity trim failed", exc_info=True)
        await asyncio.sleep(sleep_s)
