#=================================================================
# importer/main_app.py
# FastAPI application entry-point (JSON API only).
#=================================================================

import asyncio
import logging
import secrets

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

import importer.logging_filters  # noqa: F401  (installs the log sanitizer)
from importer.admin_routes import router as admin_router
from importer.config import settings
from importer.db import dispose_db, init_db
from importer.errors import ImporterError
from importer.routes import router as api_router
from importer.workers.sync_worker import worker_loop

# --- FastAPI instance ---
app = FastAPI(
    title="Vendor Catalog WooCommerce Importer",
    description="Imports the vendor product catalog into WooCommerce.",
)

# --- Logging setup (console, INFO level) ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s | %(message)s"
)
logger = logging.getLogger("uvicorn.error")
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Simple HTTP Basic Auth for /admin/* protected endpoints ---
security = HTTPBasic()

def verify_admin(credentials: HTTPBasicCredentials = Depends(security)):
    ok_user = secrets.compare_digest(credentials.username or "", settings.ADMIN_USER or "")
    ok_pass = secrets.compare_digest(credentials.password or "", settings.ADMIN_PASS or "")
    if not (ok_user and ok_pass):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )

# ---------------- Include routers ----------------

app.include_router(api_router)           # /api/*

app.include_router(
    admin_router,
    prefix="/admin",
    dependencies=[Depends(verify_admin)],
)                                        # /admin/api/*

# --- Root endpoint ---
@app.get("/")
async def home():
    return {"status": "running", "service": "Vendor Catalog WooCommerce Importer"}

# --- Domain errors carry their own HTTP status ---
@app.exception_handler(ImporterError)
async def importer_error_handler(request: Request, exc: ImporterError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("[HTTP] %s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# --- Global error handler (keeps full stack trace in logs) ---
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": {"code": "INTERNAL_ERROR", "message": str(exc), "details": {}}},
    )

# ---- Background worker lifecycle ----
_worker_task: asyncio.Task | None = None
_worker_stop: asyncio.Event | None = None

@app.on_event("startup")
async def _startup():
    await init_db()
    if not settings.SYNC_WORKER_ENABLED:
        logger.info("[WORKER] disabled (SYNC_WORKER_ENABLED=0)")
        return
    global _worker_task, _worker_stop
    _worker_stop = asyncio.Event()
    _worker_task = asyncio.create_task(worker_loop(_worker_stop))

@app.on_event("shutdown")
async def _shutdown():
    global _worker_task, _worker_stop
    if _worker_stop:
        _worker_stop.set()
    if _worker_task:
        try:
            await asyncio.wait_for(_worker_task, timeout=5.0)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            _worker_task.cancel()
    _worker_task, _worker_stop = None, None
    await dispose_db()
