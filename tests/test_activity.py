# tests/test_activity.py

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest

from taskbridge.activity import ActivityRecorder, run_activity_trimmer
from taskbridge.gateway import PersistenceGateway
from taskbridge.models import Entity
from taskbridge.storage.embedded import EmbeddedStore

from .conftest import seed_user
from .fakes import BrokenActivityStore


@pytest.mark.asyncio
async def test_cap_evicts_oldest_first(make_gateway) -> None:
    gw = await make_gateway(activity_cap=3)

    for i in range(4):
        await gw.create(Entity.ACTIVITY, {"action": "note", "details": f"n{i}"})

    records = await gw.recent_activity()
    assert [r.details for r in records] == ["n3", "n2", "n1"]


@pytest.mark.asyncio
async def test_eviction_follows_insertion_order_not_timestamps(make_gateway) -> None:
    gw = await make_gateway(activity_cap=2)

    for record_id, ts in (
        ("new1", "2025-01-01T00:00:00.000Z"),
        ("new2", "2025-01-02T00:00:00.000Z"),
        ("old", "2020-01-01T00:00:00.000Z"),
    ):
        await gw.create(Entity.ACTIVITY, {"id": record_id, "action": "imported", "timestamp": ts})

    records = await gw.recent_activity(10)
    assert [r.id for r in records] == ["new2", "old"]


@pytest.mark.asyncio
async def test_every_mutation_is_recorded_within_the_cap(make_gateway) -> None:
    gw = await make_gateway(activity_cap=2)
    await seed_user(gw, "first")
    await seed_user(gw, "second")
    await seed_user(gw, "third")

    records = await gw.recent_activity(10)
    assert len(records) == 2
    assert [r.details for r in records] == ["User 'third' created", "User 'second' created"]


@pytest.mark.asyncio
async def test_recent_defaults_to_query_limit(make_gateway) -> None:
    gw = await make_gateway(activity_query_limit=2)
    for i in range(3):
        await gw.create(Entity.ACTIVITY, {"action": "note", "details": f"n{i}"})

    assert len(await gw.recent_activity()) == 2
    assert len(await gw.recent_activity(3)) == 3


@pytest.mark.asyncio
async def test_recorder_failure_never_fails_the_mutation(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    gw = PersistenceGateway(BrokenActivityStore(tmp_path))
    await gw.open()
    caplog.set_level(logging.WARNING, logger="taskbridge.activity")

    user = await seed_user(gw, "resilient")

    assert await gw.find(Entity.USER, user.id) is not None
    assert any("Activity record failed" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_trimmer_enforces_cap_for_foreign_writers(tmp_path: Path) -> None:
    store = EmbeddedStore(tmp_path)
    gw = PersistenceGateway(store, activity_cap=2)
    await gw.open()
    # rows written by another process straight into the log, bypassing the recorder
    for i in range(5):
        await store.insert(
            Entity.ACTIVITY,
            {"id": f"ext-{i}", "action": "external", "details": str(i),
             "timestamp": f"2024-01-01T00:00:0{i}.000Z", "actor_id": None, "task_id": None,
             "project_id": None},
        )

    runner = asyncio.create_task(run_activity_trimmer(gw.recorder, interval_seconds=0.01))
    await asyncio.sleep(0.05)
    runner.cancel()
    with pytest.raises(asyncio.CancelledError):
        await runner

    assert [r.id for r in await gw.recent_activity()] == ["ext-4", "ext-3"]


def test_cap_must_be_positive(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        ActivityRecorder(BrokenActivityStore(tmp_path), cap=0)
