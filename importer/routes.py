#=======================================================================================
# importer/routes.py
# Sync control API under /api/*.
#
# Mutating endpoints (start/pause/resume/cancel/tick) require HTTP Basic (admin);
# status, history, stats, preview, live log and catalog count are read-only.
#
# In main_app.py, include with NO extra prefix:
#   app.include_router(api_router)
#=======================================================================================

import json
import logging
import secrets
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from importer.config import settings
from importer.deps import get_factory, get_orchestrator
from importer.factory import ServiceFactory
from importer.log.live_log import get_live_log
from importer.sync.orchestrator import SyncOrchestrator, build_filters

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api", tags=["Sync API"])

# ---------------------------
# HTTP Basic for sync control
# ---------------------------
security = HTTPBasic()

def verify_admin(credentials: HTTPBasicCredentials = Depends(security)):
    ok_user = secrets.compare_digest(credentials.username or "", settings.ADMIN_USER or "")
    ok_pass = secrets.compare_digest(credentials.password or "", settings.ADMIN_PASS or "")
    if not (ok_user and ok_pass):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )

# ---------------------------
# Helpers
# ---------------------------
async def _safe_json(req: Request) -> Dict[str, Any]:
    """Best-effort JSON body parsing with fallbacks."""
    try:
        data = await req.json()
        return data if isinstance(data, dict) else {}
    except Exception:
        try:
            raw = (await req.body()).decode("utf-8", "ignore")
            data = json.loads(raw) if raw.strip() else {}
            return data if isinstance(data, dict) else {}
        except ValueError:
            return {}

def _get_bool(payload: Dict[str, Any], *keys: str, default: bool = False) -> bool:
    for k in keys:
        if k in payload:
            v = payload.get(k)
            if isinstance(v, str):
                return v.strip().lower() in {"1", "true", "yes", "on"}
            return bool(v)
    return default

def _get_int(payload: Dict[str, Any], *keys: str) -> Optional[int]:
    for k in keys:
        v = payload.get(k)
        if v is None or v == "":
            continue
        try:
            return int(v)
        except (TypeError, ValueError):
            raise HTTPException(status_code=400, detail=f"{k} must be an integer")
    return None

async def _profile_id(req: Request) -> Optional[int]:
    payload = await _safe_json(req)
    pid = _get_int(payload, "profile_id", "profileId")
    if pid is None:
        pid = _get_int(dict(req.query_params), "profile_id")
    return pid

def _sync(progress) -> Dict[str, Any]:
    return {"ok": True, "sync": progress.model_dump()}

# ---------------------------
# Sync control
# ---------------------------

@router.post("/sync/start", dependencies=[Depends(verify_admin)])
async def api_sync_start(request: Request, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """
    Body:
      {
        "profile_id": int (default profile when omitted),
        "limit": int (test limit; profile's when omitted),
        "incremental": bool,
        "resume": bool   # continue the previous stopped/failed run
      }
    """
    payload = await _safe_json(request)
    progress = await orchestrator.start(
        profile_id=_get_int(payload, "profile_id", "profileId"),
        limit=_get_int(payload, "limit"),
        incremental=_get_bool(payload, "incremental", "sync_type_incremental"),
        resume=_get_bool(payload, "resume"),
    )
    logger.info("[SYNC] start requested: %s (%s)", progress.sync_id, progress.sync_type)
    return _sync(progress)

@router.post("/sync/pause", dependencies=[Depends(verify_admin)])
async def api_sync_pause(request: Request, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return _sync(await orchestrator.pause(await _profile_id(request)))

@router.post("/sync/resume", dependencies=[Depends(verify_admin)])
async def api_sync_resume(request: Request, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return _sync(await orchestrator.resume(await _profile_id(request)))

@router.post("/sync/cancel", dependencies=[Depends(verify_admin)])
async def api_sync_cancel(request: Request, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return _sync(await orchestrator.cancel(await _profile_id(request)))

@router.post("/sync/tick", dependencies=[Depends(verify_admin)])
async def api_sync_tick(request: Request, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Process one page now instead of waiting for the worker."""
    return _sync(await orchestrator.tick(await _profile_id(request)))

# ---------------------------
# Read-only
# ---------------------------

@router.get("/sync/status")
async def api_sync_status(
    profile_id: Optional[int] = Query(None),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    progress = await orchestrator.status(profile_id)
    out = _sync(progress)
    if progress.sync_id:
        out["history"] = await orchestrator.history.get(progress.sync_id)
    return out

@router.get("/sync/history")
async def api_sync_history(
    limit: int = Query(20, ge=1, le=200),
    profile_id: Optional[int] = Query(None),
    factory: ServiceFactory = Depends(get_factory),
):
    return {"ok": True, "history": await factory.history().get_recent(limit, profile_id)}

@router.get("/sync/stats")
async def api_sync_stats(factory: ServiceFactory = Depends(get_factory)):
    return {"ok": True, "stats": await factory.history().get_stats()}

@router.get("/sync/preview")
async def api_sync_preview(
    profile_id: Optional[int] = Query(None),
    limit: int = Query(5, ge=1, le=50),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Dry run: transformed payloads for the first records, nothing written to the store."""
    return {"ok": True, "preview": await orchestrator.preview(profile_id, limit)}

@router.get("/sync/live-log")
async def api_sync_live_log(since: int = Query(0, ge=0)):
    entries = get_live_log(since)
    return {"ok": True, "entries": entries, "count": len(entries)}

@router.get("/catalog/count")
async def api_catalog_count(
    profile_id: Optional[int] = Query(None),
    factory: ServiceFactory = Depends(get_factory),
):
    cfg = await factory.profile_configuration(profile_id)
    catalog = factory.catalog_client(cfg)
    total = await catalog.count_products(build_filters(cfg), settings.VENDOR_MAX_COUNT_PAGES)
    return {"ok": True, "profile_id": cfg.get_profile_id(), "count": total}
