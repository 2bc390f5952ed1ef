import asyncio

import pytest

from importer.errors import SyncAlreadyRunning, SyncStateError
from importer.models.profile import SyncProfile
from importer.sync.orchestrator import SyncOrchestrator
from importer.sync.state import stamp
from importer.workers.sync_worker import run_once

from fakes import vendor_product


def _orchestrator(factory, lock_scope="global", page_size=2, page_retries=1):
    return SyncOrchestrator(factory, lock_scope=lock_scope, page_size=page_size, page_retries=page_retries)


def _profile(factory, **kw):
    return asyncio.run(factory.profiles().save(SyncProfile(**kw)))


# ---- full / incremental runs ----

def test_full_sync_creates_products_and_completes(factory, catalog, woo):
    catalog.products = [vendor_product(f"SK-{i}") for i in range(3)]
    orch = _orchestrator(factory)

    async def run():
        started = await orch.start()
        done = await orch.run_to_completion()
        profile = await factory.profiles().find_default()
        return started, done, profile, await orch.history.get(done.sync_id)

    started, done, profile, history = asyncio.run(run())
    assert started.status == "running"
    assert started.sync_type == "full"
    assert done.status == "completed"
    assert (done.processed, done.created, done.updated, done.failed) == (3, 3, 0, 0)
    assert sorted(p["sku"] for p in woo.products.values()) == ["SK-0", "SK-1", "SK-2"]
    assert [c["page"] for c in catalog.calls] == [0, 1]
    assert catalog.calls[0]["filters"] == {"Active": 1}
    # last sync is the run's start, so records changed mid-run are picked up next time
    assert profile.last_sync == started.started_at[:19]
    assert history["status"] == "completed"
    assert history["products_created"] == 3


def test_incremental_run_updates_existing_products(factory, catalog, woo):
    catalog.products = [vendor_product("SK-1")]
    orch = _orchestrator(factory)

    async def run():
        first = await orch.start()
        await orch.run_to_completion()
        second = await orch.start(incremental=True)
        return first, second, await orch.run_to_completion()

    first, second, done = asyncio.run(run())
    assert second.sync_type == "incremental"
    assert second.since == first.started_at[:19]
    assert catalog.calls[-1]["filters"]["NewerThan"] == second.since
    assert (done.created, done.updated) == (0, 1)
    assert len(woo.products) == 1


def test_incremental_without_previous_sync_runs_full(factory, catalog):
    progress = asyncio.run(_orchestrator(factory).start(incremental=True))
    assert progress.sync_type == "full"
    assert progress.since is None


def test_profile_filters_replace_default_active_filter(factory, catalog):
    profile = _profile(factory, name="Wheels", filters={"category": "C1", "active": True})
    orch = _orchestrator(factory)

    async def run():
        await orch.start(profile.id)
        return await orch.tick()

    asyncio.run(run())
    assert catalog.calls[0]["filters"] == {"category": "C1", "active": True}


# ---- locking ----

def test_second_start_is_rejected_while_running(factory):
    other = _profile(factory, name="Other")
    orch = _orchestrator(factory)

    async def run():
        await orch.start()
        with pytest.raises(SyncAlreadyRunning):
            await orch.start()
        # global scope: one run at a time, whatever the profile
        with pytest.raises(SyncAlreadyRunning):
            await orch.start(other.id)

    asyncio.run(run())


def test_profile_lock_scope_allows_parallel_profiles(factory):
    a = _profile(factory, name="A")
    b = _profile(factory, name="B")
    orch = _orchestrator(factory, lock_scope="profile")

    async def run():
        pa = await orch.start(a.id)
        pb = await orch.start(b.id)
        with pytest.raises(SyncAlreadyRunning):
            await orch.start(a.id)
        return pa, pb, await orch.status(a.id)

    pa, pb, status = asyncio.run(run())
    assert pa.sync_id != pb.sync_id
    assert pa.scope == "profile"
    assert status.sync_id == pa.sync_id


# ---- operator signals ----

def test_pause_mid_page_then_resume_continues_at_offset(factory, catalog, woo):
    catalog.products = [vendor_product("SK-0"), vendor_product("SK-1")]
    orch = _orchestrator(factory)

    async def pause_once(body):
        woo.on_save = None
        await orch.pause()

    woo.on_save = pause_once

    async def run():
        await orch.start()
        paused = await orch.tick()
        history = await orch.history.get(paused.sync_id)
        resumed = await orch.resume()
        return paused, history, resumed, await orch.run_to_completion()

    paused, history, resumed, done = asyncio.run(run())
    assert paused.status == "paused"
    assert (paused.page, paused.offset, paused.processed) == (0, 1, 1)
    assert paused.paused_at is not None
    assert history["status"] == "paused"
    assert resumed.status == "running"
    assert resumed.paused_at is None
    assert done.status == "completed"
    assert (done.processed, done.created) == (2, 2)
    assert len(woo.products) == 2


def test_cancel_mid_page_stops_and_releases_lock(factory, catalog, woo):
    catalog.products = [vendor_product(f"SK-{i}") for i in range(3)]
    orch = _orchestrator(factory)

    async def cancel_once(body):
        woo.on_save = None
        await orch.cancel()

    woo.on_save = cancel_once

    async def run():
        await orch.start()
        stopped = await orch.tick()
        history = await orch.history.get(stopped.sync_id)
        again = await orch.start()
        return stopped, history, again

    stopped, history, again = asyncio.run(run())
    assert stopped.status == "stopped"
    assert stopped.processed == 1
    assert stopped.completed_at is not None
    assert history["status"] == "stopped"
    assert again.status == "running"
    assert again.sync_id != stopped.sync_id


def test_cancel_paused_run_finishes_immediately(factory, catalog):
    catalog.products = [vendor_product("SK-1")]
    orch = _orchestrator(factory)

    async def run():
        await orch.start()
        pausing = await orch.pause()
        paused = await orch.tick()
        return pausing, paused, await orch.cancel()

    pausing, paused, cancelled = asyncio.run(run())
    assert pausing.status == "pausing"
    assert paused.status == "paused"
    assert cancelled.status == "stopped"
    assert catalog.calls == []


def test_illegal_transitions(factory):
    orch = _orchestrator(factory)

    async def run():
        with pytest.raises(SyncStateError):
            await orch.pause()
        await orch.start()
        with pytest.raises(SyncStateError):
            await orch.resume()
        again = await orch.pause()
        twice = await orch.pause()
        return again, twice

    again, twice = asyncio.run(run())
    assert again.status == twice.status == "pausing"


def test_tick_and_status_without_run_are_idle(factory):
    orch = _orchestrator(factory)
    assert asyncio.run(orch.tick()).status == "idle"
    assert asyncio.run(orch.status()).status == "idle"


# ---- failures ----

def test_page_failure_is_retried_on_next_tick(factory, catalog):
    catalog.products = [vendor_product("SK-1")]
    catalog.failures = 1
    orch = _orchestrator(factory, page_retries=1)

    async def run():
        await orch.start()
        return await orch.tick(), await orch.tick()

    first, second = asyncio.run(run())
    assert first.status == "running"
    assert first.page_attempts == 1
    assert "503" in first.error
    assert second.status == "completed"
    assert second.page_attempts == 0


def test_page_failure_fails_run_after_retries(factory, catalog):
    catalog.products = [vendor_product("SK-1")]
    catalog.failures = 5
    orch = _orchestrator(factory, page_retries=1)

    async def run():
        await orch.start()
        await orch.tick()
        failed = await orch.tick()
        return failed, await orch.history.get(failed.sync_id)

    failed, history = asyncio.run(run())
    assert failed.status == "failed"
    assert "503" in failed.error
    assert history["status"] == "failed"
    assert "503" in history["error_message"]


def test_start_with_resume_continues_failed_run(factory, catalog):
    catalog.products = [vendor_product(f"SK-{i}") for i in range(3)]
    orch = _orchestrator(factory, page_retries=0)

    async def run():
        await orch.start()
        await orch.tick()           # page 0 done
        catalog.failures = 1
        failed = await orch.tick()  # page 1 fails, no retries left
        resumed = await orch.start(resume=True)
        done = await orch.run_to_completion()
        return failed, resumed, done, await orch.history.get(done.sync_id)

    failed, resumed, done, history = asyncio.run(run())
    assert failed.status == "failed"
    assert resumed.sync_id == failed.sync_id
    assert (resumed.page, resumed.processed) == (1, 2)
    assert done.status == "completed"
    assert done.processed == 3
    assert history["status"] == "completed"


def test_bad_records_are_counted_and_logged(factory, catalog, woo):
    catalog.products = [vendor_product("SK-1"), vendor_product("BAD"), {"Name": {"es": "Sin referencia"}}]
    woo.fail_skus = {"BAD"}
    orch = _orchestrator(factory)

    async def run():
        await orch.start()
        done = await orch.run_to_completion()
        return done, await factory.sync_log().get_logs(level="error", sku="BAD")

    done, errors = asyncio.run(run())
    assert done.status == "completed"
    assert (done.processed, done.created, done.failed) == (3, 1, 2)
    assert len(errors) == 1
    assert "Invalid product" in errors[0]["message"]


# ---- limits / protection ----

def test_limit_truncates_the_run(factory, catalog, woo):
    catalog.products = [vendor_product(f"SK-{i}") for i in range(5)]
    orch = _orchestrator(factory)

    async def run():
        await orch.start(limit=3)
        return await orch.run_to_completion()

    done = asyncio.run(run())
    assert done.status == "completed"
    assert done.processed == 3
    assert len(woo.products) == 3
    assert [c["page"] for c in catalog.calls] == [0, 1]


def test_profile_test_limit_applies_when_no_limit_given(factory, catalog, woo):
    catalog.products = [vendor_product(f"SK-{i}") for i in range(4)]
    profile = _profile(factory, name="Trial", settings={"test_limit": 1})
    orch = _orchestrator(factory)

    async def run():
        started = await orch.start(profile.id)
        return started, await orch.run_to_completion()

    started, done = asyncio.run(run())
    assert started.limit == 1
    assert done.processed == 1


def test_protected_fields_are_kept_on_update(factory, catalog, woo):
    asyncio.run(factory.config_store().set_many({"sync_protection": {"name": True}}))
    orch = _orchestrator(factory)

    async def run():
        catalog.products = [vendor_product("SK-1", name="Patinete")]
        await orch.start()
        await orch.run_to_completion()
        catalog.products = [vendor_product("SK-1", name="Nuevo", RRP=120)]
        await orch.start()
        return await orch.run_to_completion()

    done = asyncio.run(run())
    (product,) = woo.products.values()
    assert done.updated == 1
    assert product["name"] == "[ro]Patinete"
    assert product["regular_price"] == "600.00"


# ---- categories / preview ----

def test_categories_are_synced_before_products(factory, catalog, woo, backend):
    catalog.categories = [
        {"Reference": "C1", "Name": {"es": "Ruedas"}},
        {"Reference": "C2", "Name": "Frenos", "ParentReference": "C1"},
        {"Reference": "C3", "Name": {"ro": "Gata"}},
    ]
    catalog.products = [vendor_product("SK-1", Categories=["C2"])]
    orch = _orchestrator(factory)

    async def run():
        await orch.start()
        return await orch.run_to_completion()

    asyncio.run(run())
    by_slug = {c["slug"]: c for c in woo.categories.values()}
    assert {s: c["name"] for s, c in by_slug.items()} == {"c1": "[ro]Ruedas", "c2": "[ro]Frenos", "c3": "Gata"}
    assert by_slug["c2"]["parent"] == by_slug["c1"]["id"]
    assert ("batch", ["Ruedas", "Frenos"], "es") in backend.calls
    (product,) = woo.products.values()
    assert product["categories"] == [{"id": by_slug["c2"]["id"]}]


def test_preview_transforms_without_writing(factory, catalog, woo):
    catalog.products = [vendor_product("SK-1"), vendor_product("SK-2")]
    preview = asyncio.run(_orchestrator(factory).preview(limit=1))
    assert preview["fetched"] == 2
    assert preview["count"] == 1
    item = preview["items"][0]
    assert item["ok"] is True
    assert item["products"][0]["name"] == "[ro]Patinete"
    assert woo.products == {}
    assert woo.categories == {}


# ---- worker ----

def test_worker_starts_due_profiles_and_ticks_them(factory, catalog):
    catalog.products = [vendor_product("SK-1")]
    nightly = _profile(factory, name="Nightly", settings={"sync_frequency": "daily"})
    orch = _orchestrator(factory, lock_scope="profile")

    async def run():
        first = await run_once(orch)
        started = await orch.status(nightly.id)
        second = await run_once(orch)
        return first, started, second, await orch.status(nightly.id)

    first, started, second, final = asyncio.run(run())
    assert first == 0
    assert started.status == "running"
    assert second == 1
    assert final.status == "completed"
    assert final.sync_id == started.sync_id


def test_worker_does_not_restart_recently_failed_profile(factory, catalog):
    catalog.products = [vendor_product("SK-1")]
    catalog.failures = 10
    nightly = _profile(factory, name="Nightly", settings={"sync_frequency": "daily"})
    orch = _orchestrator(factory, lock_scope="profile", page_retries=0)

    async def run():
        await run_once(orch)  # start
        await run_once(orch)  # tick -> failed
        failed = await orch.status(nightly.id)
        await run_once(orch)
        return failed, await orch.status(nightly.id)

    failed, later = asyncio.run(run())
    assert failed.status == "failed"
    assert later.sync_id == failed.sync_id
    assert later.status == "failed"


# ---- one tick per run ----

def test_overlapping_ticks_work_the_page_once(factory, catalog, woo):
    catalog.products = [vendor_product("SK-0"), vendor_product("SK-1")]
    api = _orchestrator(factory, page_size=5)
    worker = _orchestrator(factory, page_size=5)

    async def slow_save(body):
        await asyncio.sleep(0.01)

    woo.on_save = slow_save

    async def run():
        await api.start()
        await asyncio.gather(api.tick(), worker.tick())
        return await api.status()

    done = asyncio.run(run())
    assert done.status == "completed"
    assert (done.processed, done.created, done.updated) == (2, 2, 0)
    assert [c["page"] for c in catalog.calls] == [0]
    assert [c[0] for c in woo.calls] == ["create_product", "create_product"]
    assert done.tick_owner is None


def test_stale_tick_lease_is_taken_over(factory, catalog):
    catalog.products = [vendor_product("SK-1")]
    orch = _orchestrator(factory)

    def claim(started):
        def _set(p):
            p.tick_owner = "crashed-worker"
            p.tick_started = started
            return p
        return _set

    async def run():
        await orch.start()
        await orch.state.update("sync:global", claim(stamp()))
        held = await orch.tick()
        fetched_while_held = len(catalog.calls)
        await orch.state.update("sync:global", claim("2000-01-01T00:00:00"))
        return held, fetched_while_held, await orch.tick()

    held, fetched_while_held, done = asyncio.run(run())
    assert held.status == "running"
    assert held.processed == 0
    assert fetched_while_held == 0
    assert done.status == "completed"
    assert done.processed == 1


def test_pause_between_pages_resumes_on_next_page(factory, catalog):
    catalog.products = [vendor_product(f"SK-{i}") for i in range(5)]
    orch = _orchestrator(factory, page_size=2)

    async def run():
        await orch.start()
        first = await orch.tick()
        await orch.pause()
        paused = await orch.tick()
        fetched = [c["page"] for c in catalog.calls]
        await orch.resume()
        return first, paused, fetched, await orch.run_to_completion()

    first, paused, fetched, done = asyncio.run(run())
    assert (first.page, first.offset) == (1, 0)
    assert paused.status == "paused"
    assert (paused.page, paused.offset, paused.processed) == (1, 0, 2)
    assert fetched == [0]
    assert [c["page"] for c in catalog.calls] == [0, 1, 2]
    assert (done.status, done.processed, done.created) == ("completed", 5, 5)


def test_category_without_id_is_logged_and_run_continues(factory, catalog, woo):
    catalog.categories = [{"Reference": "C1", "Name": "Ruedas"}, {"Reference": "C2", "Name": "Frenos"}]
    catalog.products = [vendor_product("SK-1", Categories=["C2"])]
    create = woo.create_category

    async def create_without_id(body):
        if body["slug"] == "c1":
            return {"name": body["name"]}
        return await create(body)

    woo.create_category = create_without_id
    orch = _orchestrator(factory)

    async def run():
        await orch.start()
        done = await orch.run_to_completion()
        return done, await orch.sync_log.get_logs(level="warning")

    done, warnings = asyncio.run(run())
    assert done.status == "completed"
    assert done.created == 1
    assert [c["slug"] for c in woo.categories.values()] == ["c2"]
    assert any("C1" in w["message"] for w in warnings)
    (product,) = woo.products.values()
    assert product["categories"] == [{"id": next(iter(woo.categories))}]
