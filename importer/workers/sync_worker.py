# ---------------------------
# importer/workers/sync_worker.py
# ---------------------------
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from importer.config import settings
from importer.errors import ImporterError, SyncAlreadyRunning
from importer.models.tables import utcnow
from importer.sync.orchestrator import SyncOrchestrator
from importer.sync.state import FAILED, TICKABLE_STATUSES

logger = logging.getLogger("uvicorn.error")

# a scheduled run that failed is not retried before this
FAILED_RETRY_DELAY = timedelta(hours=1)


async def _recently_failed(orchestrator: SyncOrchestrator, profile_id: int) -> bool:
    progress = await orchestrator.status(profile_id)
    if progress.status != FAILED or progress.profile_id != profile_id or not progress.completed_at:
        return False
    try:
        finished = datetime.fromisoformat(progress.completed_at)
    except ValueError:
        return False
    return utcnow() - finished < FAILED_RETRY_DELAY


async def run_once(orchestrator: SyncOrchestrator) -> int:
    """
    One pass: tick every run that has work to do, then start incremental runs
    for profiles whose schedule is due. Returns the number of runs ticked.
    """
    ticked = 0
    for key, progress in await orchestrator.state.list_active():
        if progress.status not in TICKABLE_STATUSES:
            continue
        try:
            await orchestrator.tick(progress.profile_id)
            ticked += 1
        except ImporterError as e:
            logger.error("[WORKER] tick %s failed: %s", key, e.message)

    for profile in await orchestrator.profiles.find_due_for_sync():
        if await _recently_failed(orchestrator, profile.id):
            continue
        try:
            progress = await orchestrator.start(profile.id, incremental=True)
            logger.info("[WORKER] scheduled sync %s started for profile %s", progress.sync_id, profile.slug)
        except SyncAlreadyRunning:
            continue
        except ImporterError as e:
            logger.error("[WORKER] scheduled sync for profile %s not started: %s", profile.slug, e.message)
    return ticked


async def worker_loop(stop_event: asyncio.Event, orchestrator: Optional[SyncOrchestrator] = None) -> None:
    orchestrator = orchestrator or SyncOrchestrator()
    interval = max(0.1, float(settings.SYNC_TICK_INTERVAL))
    logger.info("[WORKER] started (tick every %.1fs, lock scope=%s)", interval, orchestrator.lock_scope)

    while not stop_event.is_set():
        try:
            await run_once(orchestrator)
        except Exception as e:
            logger.exception("[WORKER] pass failed: %s", e)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue

    logger.info("[WORKER] stopped")
