#=======================================================================================
# importer/admin_routes.py
# Admin endpoints. These are protected via Basic Auth in main_app.py
# and mounted under /admin, so final paths are /admin/api/*.
#
# Profiles, category mappings, persistent sync log, options, translation cache
# and an integration health check. Sync control lives in importer.routes.
#=======================================================================================

import logging
from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from importer.config import settings
from importer.deps import get_factory
from importer.errors import ProfileNotFound
from importer.factory import ServiceFactory
from importer.log.live_log import clear_live_log
from importer.log.persistent_logger import LEVELS
from importer.models.profile import SyncProfile
from importer.settings_store import SECRET_KEYS
from importer.vendor.catalog_client import CATEGORIES_ENDPOINT

logger = logging.getLogger("uvicorn.error")

# This router already has prefix="/api". In main_app we mount it with prefix="/admin",
# so final paths are /admin/api/*.
router = APIRouter(prefix="/api", tags=["Admin API"])


class ProfileIn(BaseModel):
    name: str
    slug: str = ""
    description: str = ""
    is_active: bool = True
    filters: Dict[str, Any] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)
    category_mappings: Dict[str, int] = Field(default_factory=dict)


class MappingIn(BaseModel):
    reference: str
    woo_id: int


# --------------------------------------------------------------------
# Profiles
# --------------------------------------------------------------------

@router.get("/profiles")
async def list_profiles(factory: ServiceFactory = Depends(get_factory)):
    profiles = factory.profiles()
    await profiles.find_default()
    return {"ok": True, "profiles": [p.model_dump() for p in await profiles.find_all()]}

@router.get("/profiles/{profile_id}")
async def get_profile(profile_id: int, factory: ServiceFactory = Depends(get_factory)):
    cfg = await factory.profile_configuration(profile_id)
    return {"ok": True, **cfg.to_display()}

@router.post("/profiles")
async def create_profile(payload: ProfileIn, factory: ServiceFactory = Depends(get_factory)):
    saved = await factory.profiles().save(SyncProfile(**payload.model_dump()))
    logger.info("[PROFILE] created %s (%s)", saved.id, saved.slug)
    return {"ok": True, "profile": saved.model_dump()}

@router.put("/profiles/{profile_id}")
async def update_profile(profile_id: int, payload: ProfileIn, factory: ServiceFactory = Depends(get_factory)):
    profiles = factory.profiles()
    current = await profiles.find(profile_id)
    if current is None:
        raise ProfileNotFound(profile_id)
    data = payload.model_dump()
    data.update({"id": profile_id, "last_sync": current.last_sync})
    saved = await profiles.save(SyncProfile(**data))
    return {"ok": True, "profile": saved.model_dump()}

@router.delete("/profiles/{profile_id}")
async def delete_profile(profile_id: int, factory: ServiceFactory = Depends(get_factory)):
    if not await factory.profiles().delete(profile_id):
        raise ProfileNotFound(profile_id)
    return {"ok": True, "deleted": profile_id}

# --------------------------------------------------------------------
# Category mappings (global; profile-level live on the profile)
# --------------------------------------------------------------------

@router.get("/category-mappings")
async def list_category_mappings(factory: ServiceFactory = Depends(get_factory)):
    return {"ok": True, "mappings": await factory.mappings().list_rows()}

@router.put("/category-mappings")
async def put_category_mappings(
    payload: List[MappingIn] = Body(...),
    factory: ServiceFactory = Depends(get_factory),
):
    """Set manual overrides; auto-discovered rows are left alone."""
    store = factory.mappings()
    for m in payload:
        if not m.reference.strip():
            raise HTTPException(status_code=400, detail="reference is required")
        await store.set_manual(m.reference.strip(), m.woo_id)
    return {"ok": True, "saved": len(payload), "mappings": await store.list_rows()}

@router.delete("/category-mappings/{reference}")
async def delete_category_mapping(reference: str, factory: ServiceFactory = Depends(get_factory)):
    deleted = await factory.mappings().delete_manual(reference)
    return {"ok": True, "deleted": deleted}

# --------------------------------------------------------------------
# Persistent sync log
# --------------------------------------------------------------------

@router.get("/logs")
async def get_logs(
    level: Optional[str] = Query(None),
    sku: Optional[str] = Query(None),
    batch_id: Optional[str] = Query(None),
    profile_id: Optional[int] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    order: str = Query("desc"),
    factory: ServiceFactory = Depends(get_factory),
):
    if level and level not in LEVELS:
        raise HTTPException(status_code=400, detail=f"level must be one of {', '.join(LEVELS)}")
    sync_log = factory.sync_log()
    total = await sync_log.get_count(level, batch_id, sku, profile_id)
    logs = await sync_log.get_logs(
        level, batch_id, sku, profile_id, limit=per_page, offset=(page - 1) * per_page, order=order
    )
    return {
        "ok": True,
        "logs": logs,
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": (total + per_page - 1) // per_page,
    }

@router.delete("/logs")
async def clear_logs(
    profile_id: Optional[int] = Query(None),
    older_than_days: Optional[int] = Query(None, ge=0),
    factory: ServiceFactory = Depends(get_factory),
):
    sync_log = factory.sync_log()
    if older_than_days is not None:
        deleted = await sync_log.clear_older_than(older_than_days)
    elif profile_id is not None:
        deleted = await sync_log.clear_for_profile(profile_id)
    else:
        deleted = await sync_log.clear_all()
        clear_live_log()
    return {"ok": True, "deleted": deleted}

# --------------------------------------------------------------------
# Options
# --------------------------------------------------------------------

@router.get("/settings")
async def get_settings(factory: ServiceFactory = Depends(get_factory)):
    config = factory.config_store()
    return {"ok": True, "settings": config.public_view(await config.get_all())}

@router.put("/settings")
async def put_settings(payload: Dict[str, Any] = Body(...), factory: ServiceFactory = Depends(get_factory)):
    config = factory.config_store()
    # masked secrets come back unchanged from the UI; keep the stored value
    changes = {
        k: v for k, v in payload.items()
        if not (k in SECRET_KEYS and isinstance(v, str) and v.startswith("*"))
    }
    saved = await config.set_many(changes)
    return {"ok": True, "saved": sorted(saved), "settings": config.public_view(await config.get_all())}

# --------------------------------------------------------------------
# Translation cache
# --------------------------------------------------------------------

@router.get("/translations")
async def translation_stats(factory: ServiceFactory = Depends(get_factory)):
    return {"ok": True, "count": await factory.translation_cache().count()}

@router.delete("/translations")
async def clear_translations(factory: ServiceFactory = Depends(get_factory)):
    deleted = await factory.translation_cache().clear()
    return {"ok": True, "deleted": deleted}

# --------------------------------------------------------------------
# Integration health: vendor API + WP/Woo reachability
# --------------------------------------------------------------------

@router.get("/integration/health")
async def admin_integration_health(factory: ServiceFactory = Depends(get_factory)):
    """
    Verifies reachability of the vendor API and WP/Woo. Returns 200 with per-target
    status; does NOT require secrets to succeed.
    """
    vendor_url = settings.VENDOR_API_URL
    wc_base = settings.WC_BASE_URL
    wp_url = f"{wc_base}/wp-json" if wc_base else ""
    api_key = str(await factory.config_store().get("api_key") or "")

    async def _check(client: httpx.AsyncClient, url: str, allow_status: set[int], headers=None) -> dict:
        if not url:
            return {"ok": False, "status": None, "error": "not configured"}
        try:
            resp = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            logger.debug("[HEALTH] %s failed: %s", url, e)
            return {"ok": False, "status": None, "error": type(e).__name__}
        return {"ok": resp.status_code in allow_status, "status": resp.status_code}

    timeout = httpx.Timeout(10.0, connect=10.0, read=10.0)
    async with httpx.AsyncClient(timeout=timeout, verify=settings.HTTP_VERIFY_TLS) as client:
        checks = {
            "vendor": await _check(
                client,
                f"{vendor_url}{CATEGORIES_ENDPOINT}?Page=0&PageSize=1" if vendor_url else "",
                {200} if api_key else {200, 401, 403},
                headers={"X-API-KEY": api_key} if api_key else None,
            ),
            "wordpress": await _check(client, wp_url, {200, 401}),
            # presence of the namespace implies the plugin is active
            "woocommerce": await _check(client, f"{wp_url}/wc/v3" if wp_url else "", {200, 401, 403, 404}),
        }

    ok = all(v.get("ok") for v in checks.values())
    return {"ok": ok, "checks": checks, "base": {"vendor": vendor_url, "wp": wp_url, "wc": wc_base}}
