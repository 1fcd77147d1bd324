# src/taskbridge/cli/migrate.py

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path

from ..errors import ConflictError, ValidationError
from ..gateway import PersistenceGateway
from ..models import Entity, spec_for, to_row
from ..storage.embedded import EmbeddedStore

logger = logging.getLogger(__name__)

# parents before children
_ORDER: tuple[tuple[Entity, str | None], ...] = (
    (Entity.USER, "created_at"),
    (Entity.PROJECT, "created_at"),
    (Entity.MEMBERSHIP, "added_at"),
    (Entity.TASK, "created_at"),
    (Entity.ACTIVITY, "timestamp"),
    (Entity.SESSION, "created_at"),
)


async def migrate_directory(source_dir: str | Path, target: PersistenceGateway) -> dict[str, Counter]:
    """
    Copy every row of an embedded data directory into `target`.

    Ids and timestamps are kept; no activity is recorded for the copy.
    Rows that already exist (same key) are skipped, so a rerun is harmless.
    Rows that fail validation or clash with a different existing row are rejected.
    """
    source_dir = Path(source_dir)
    if not source_dir.is_dir():
        raise ValidationError(f"{source_dir} is not a directory")

    source = PersistenceGateway(EmbeddedStore(source_dir))
    report: dict[str, Counter] = {}
    async with source:
        for entity, order_by in _ORDER:
            counts: Counter = Counter()
            for item in await source.list(entity, order_by=order_by):
                row = to_row(item)
                try:
                    await target.create(entity, row, audit=False)
                    counts["copied"] += 1
                except ConflictError as exc:
                    if await target.find(entity, spec_for(entity).key_of(row)) is not None:
                        counts["skipped"] += 1
                    else:
                        # clashes with a different row (e.g. a username taken under another id)
                        counts["rejected"] += 1
                        logger.warning("Migration rejected %s row: %s", entity.value, exc)
                except ValidationError as exc:
                    counts["rejected"] += 1
                    logger.warning("Migration rejected %s row: %s", entity.value, exc)
            report[entity.value] = counts
            logger.info("Migrated %s %s", entity.value, dict(counts))
    return report
