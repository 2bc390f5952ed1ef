import pytest
from fastapi.testclient import TestClient

from importer.config import settings
from importer.deps import get_factory
from importer.main_app import app

from fakes import vendor_product

client = TestClient(app)
ADMIN = (settings.ADMIN_USER, settings.ADMIN_PASS)


@pytest.fixture
def api(factory):
    app.dependency_overrides[get_factory] = lambda: factory
    yield client
    app.dependency_overrides.clear()


def test_home():
    assert client.get("/").json()["status"] == "running"


def test_sync_control_requires_admin(api):
    assert api.post("/api/sync/start", json={}).status_code == 401
    assert api.post("/api/sync/start", json={}, auth=("admin", "wrong-password")).status_code == 401


def test_start_tick_and_status(api, catalog, woo):
    catalog.products = [vendor_product("SK-1")]

    started = api.post("/api/sync/start", json={"limit": "5"}, auth=ADMIN)
    assert started.status_code == 200
    body = started.json()
    assert body["ok"] is True
    assert body["sync"]["status"] == "running"
    assert body["sync"]["limit"] == 5

    conflict = api.post("/api/sync/start", json={}, auth=ADMIN)
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "SYNC_ALREADY_RUNNING"

    ticked = api.post("/api/sync/tick", json={}, auth=ADMIN)
    assert ticked.json()["sync"]["status"] == "completed"
    assert len(woo.products) == 1

    status = api.get("/api/sync/status").json()
    assert status["sync"]["processed"] == 1
    assert status["history"]["status"] == "completed"


def test_start_rejects_non_integer_limit(api):
    res = api.post("/api/sync/start", json={"limit": "lots"}, auth=ADMIN)
    assert res.status_code == 400


def test_pause_resume_cancel(api):
    api.post("/api/sync/start", json={}, auth=ADMIN)
    assert api.post("/api/sync/pause", auth=ADMIN).json()["sync"]["status"] == "pausing"
    assert api.post("/api/sync/resume", auth=ADMIN).json()["sync"]["status"] == "running"
    assert api.post("/api/sync/cancel", auth=ADMIN).json()["sync"]["status"] == "stopping"


def test_pause_without_run_is_conflict(api):
    res = api.post("/api/sync/pause", auth=ADMIN)
    assert res.status_code == 409
    assert res.json()["ok"] is False


def test_unknown_profile_is_404(api):
    res = api.post("/api/sync/start", json={"profile_id": 999}, auth=ADMIN)
    assert res.status_code == 404
    assert res.json()["error"]["code"] == "PROFILE_NOT_FOUND"


def test_history_stats_and_live_log(api, catalog):
    catalog.products = [vendor_product("SK-1")]
    api.post("/api/sync/start", json={}, auth=ADMIN)
    api.post("/api/sync/tick", auth=ADMIN)

    history = api.get("/api/sync/history").json()["history"]
    assert len(history) == 1
    stats = api.get("/api/sync/stats").json()["stats"]
    assert stats["by_status"]["completed"] == 1

    log = api.get("/api/sync/live-log").json()
    assert log["count"] == len(log["entries"]) > 0
    assert log["entries"][0]["message"].startswith("Started full sync")
    assert api.get("/api/sync/live-log", params={"since": log["count"]}).json()["entries"] == []


def test_preview_and_catalog_count(api, catalog, woo):
    catalog.products = [vendor_product("SK-1"), vendor_product("SK-2")]
    preview = api.get("/api/sync/preview", params={"limit": 1}).json()["preview"]
    assert preview["count"] == 1
    assert woo.products == {}

    count = api.get("/api/catalog/count").json()
    assert count["count"] == 2
    assert catalog.calls[-1]["filters"] == {"Active": 1}


# ---- admin ----

def test_admin_requires_auth(api):
    assert api.get("/admin/api/profiles").status_code == 401


def test_profile_crud(api):
    listed = api.get("/admin/api/profiles", auth=ADMIN).json()["profiles"]
    assert [p["slug"] for p in listed] == ["default"]

    created = api.post("/admin/api/profiles", json={"name": "Ruedas", "filters": {"category": "C1"}}, auth=ADMIN)
    profile = created.json()["profile"]
    assert profile["slug"] == "ruedas"

    updated = api.put(
        f"/admin/api/profiles/{profile['id']}",
        json={"name": "Ruedas", "settings": {"markup_percent": 35}},
        auth=ADMIN,
    )
    assert updated.json()["profile"]["settings"] == {"markup_percent": 35}

    detail = api.get(f"/admin/api/profiles/{profile['id']}", auth=ADMIN).json()
    assert detail["effective"]["markup_percent"] == 35
    assert detail["uses_global"]["markup_percent"] is False

    default_id = listed[0]["id"]
    assert api.delete(f"/admin/api/profiles/{default_id}", auth=ADMIN).status_code == 400
    assert api.delete(f"/admin/api/profiles/{profile['id']}", auth=ADMIN).json()["deleted"] == profile["id"]
    assert api.get(f"/admin/api/profiles/{profile['id']}", auth=ADMIN).status_code == 404


def test_category_mappings(api):
    res = api.put("/admin/api/category-mappings", json=[{"reference": "C1", "woo_id": 44}], auth=ADMIN)
    assert res.json()["mappings"] == [{"reference": "C1", "auto": None, "manual": 44, "effective": 44}]
    assert api.delete("/admin/api/category-mappings/C1", auth=ADMIN).json()["deleted"] is True
    assert api.get("/admin/api/category-mappings", auth=ADMIN).json()["mappings"] == []


def test_settings_mask_secrets_and_keep_them_on_save(api, factory):
    view = api.get("/admin/api/settings", auth=ADMIN).json()["settings"]
    assert view["api_key"] == "***********1234"

    saved = api.put("/admin/api/settings", json={"api_key": view["api_key"], "markup_percent": 30}, auth=ADMIN).json()
    assert saved["saved"] == ["markup_percent"]
    assert saved["settings"]["markup_percent"] == 30.0

    bad = api.put("/admin/api/settings", json={"translation_driver": "babelfish"}, auth=ADMIN)
    assert bad.status_code == 400
    assert bad.json()["error"]["code"] == "CONFIGURATION_ERROR"


def test_logs_filter_and_clear(api, catalog, woo):
    catalog.products = [vendor_product("BAD")]
    woo.fail_skus = {"BAD"}
    api.post("/api/sync/start", json={}, auth=ADMIN)
    api.post("/api/sync/tick", auth=ADMIN)

    errors = api.get("/admin/api/logs", params={"level": "error"}, auth=ADMIN).json()
    assert errors["total"] == 1
    assert errors["logs"][0]["sku"] == "BAD"
    assert api.get("/admin/api/logs", params={"level": "debug"}, auth=ADMIN).status_code == 400

    cleared = api.delete("/admin/api/logs", auth=ADMIN).json()
    assert cleared["deleted"] > 0
    assert api.get("/admin/api/logs", auth=ADMIN).json()["total"] == 0
    assert api.get("/api/sync/live-log").json()["entries"] == []


def test_translation_cache_endpoints(api, catalog):
    catalog.products = [vendor_product("SK-1")]
    api.get("/api/sync/preview")
    assert api.get("/admin/api/translations", auth=ADMIN).json()["count"] == 1
    assert api.delete("/admin/api/translations", auth=ADMIN).json()["deleted"] == 1
