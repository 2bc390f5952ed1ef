import asyncio

import pytest

from importer.errors import ConcurrentUpdateError
from importer.sync.history import SyncHistory, format_duration
from importer.sync.state import PAUSING, RUNNING, SyncProgress, SyncStateStore


def test_create_if_absent_only_once(database):
    store = SyncStateStore(database)

    async def run():
        first = await store.create_if_absent("sync:global", SyncProgress(sync_id="a", status=RUNNING))
        second = await store.create_if_absent("sync:global", SyncProgress(sync_id="b", status=RUNNING))
        return first, second, await store.load("sync:global")

    first, second, loaded = asyncio.run(run())
    assert (first, second) == (True, False)
    version, progress = loaded
    assert version == 1
    assert progress.sync_id == "a"


def test_compare_and_swap_rejects_stale_version(database):
    store = SyncStateStore(database)

    async def run():
        await store.create_if_absent("k", SyncProgress(sync_id="a", status=RUNNING))
        ok = await store.compare_and_swap("k", 1, SyncProgress(sync_id="a", status=PAUSING))
        stale = await store.compare_and_swap("k", 1, SyncProgress(sync_id="a", status=RUNNING))
        return ok, stale, await store.load("k")

    ok, stale, (version, progress) = asyncio.run(run())
    assert ok is True
    assert stale is False
    assert version == 2
    assert progress.status == PAUSING
    assert progress.updated_at


def test_update_applies_mutation_and_handles_missing(database):
    store = SyncStateStore(database)

    def bump(p):
        p.processed += 1
        return p

    async def run():
        missing = await store.update("k", bump)
        await store.create_if_absent("k", SyncProgress(sync_id="a", status=RUNNING))
        await store.update("k", bump)
        unchanged = await store.update("k", lambda p: None)
        return missing, unchanged, await store.load("k")

    missing, unchanged, (version, progress) = asyncio.run(run())
    assert missing is None
    assert unchanged.processed == 1
    assert progress.processed == 1
    assert version == 2


def test_update_gives_up_when_record_keeps_changing(database):
    store = SyncStateStore(database, max_attempts=3)

    async def run():
        await store.create_if_absent("k", SyncProgress(sync_id="a", status=RUNNING))
        original = store.compare_and_swap

        async def always_lose(key, expected_version, value):
            # another writer lands between our read and our swap
            await original(key, expected_version, value.model_copy())
            return await original(key, expected_version, value)

        store.compare_and_swap = always_lose
        await store.update("k", lambda p: p)

    with pytest.raises(ConcurrentUpdateError):
        asyncio.run(run())


def test_list_active_skips_terminal_runs(database):
    store = SyncStateStore(database)

    async def run():
        await store.create_if_absent("sync:profile:1", SyncProgress(sync_id="a", status=RUNNING))
        await store.create_if_absent("sync:profile:2", SyncProgress(sync_id="b", status="completed"))
        return await store.list_active()

    active = asyncio.run(run())
    assert [key for key, _ in active] == ["sync:profile:1"]


@pytest.mark.parametrize("seconds,text", [(None, "-"), (42, "42s"), (125, "2m 5s"), (3720, "1h 2m")])
def test_format_duration(seconds, text):
    assert format_duration(seconds) == text


def test_history_lifecycle_and_stats(database):
    history = SyncHistory(database)

    async def run():
        await history.create("run-1", "full", profile_id=1)
        await history.update("run-1", processed=3, created=2, updated=1)
        running = await history.has_running_sync()
        await history.pause("run-1")
        await history.resume("run-1")
        await history.complete("run-1", processed=4, created=2, updated=2)
        await history.create("run-2", "incremental", profile_id=2)
        await history.fail("run-2", "vendor down", processed=1, failed=1)
        return running, await history.get("run-1"), await history.get_recent(10, profile_id=2), await history.get_stats()

    running, first, recent, stats = asyncio.run(run())
    assert running is True
    assert first["status"] == "completed"
    assert first["products_processed"] == 4
    assert first["completed_at"] is not None
    assert first["duration"].endswith("s")
    assert [r["sync_id"] for r in recent] == ["run-2"]
    assert recent[0]["error_message"] == "vendor down"
    assert stats["total_syncs"] == 2
    assert stats["by_status"]["completed"] == 1
    assert stats["by_status"]["failed"] == 1
    assert stats["total_processed"] == 5
    assert stats["last_completed"]["sync_id"] == "run-1"


def test_history_cleanup_keeps_newest(database):
    history = SyncHistory(database)

    async def run():
        for i in range(5):
            await history.create(f"run-{i}")
        deleted = await history.cleanup(keep=2)
        return deleted, await history.get_recent(10)

    deleted, rows = asyncio.run(run())
    assert deleted == 3
    assert [r["sync_id"] for r in rows] == ["run-4", "run-3"]
