# importer/sync/state.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy import select, update as sa_update
from sqlalchemy.exc import IntegrityError

from importer.db import get_sessionmaker
from importer.errors import ConcurrentUpdateError
from importer.models.tables import SyncStateRecord, utcnow

logger = logging.getLogger("uvicorn.error")

IDLE = "idle"
RUNNING = "running"
PAUSING = "pausing"
PAUSED = "paused"
STOPPING = "stopping"
STOPPED = "stopped"
COMPLETED = "completed"
FAILED = "failed"

# a run in one of these holds the lock for its scope
ACTIVE_STATUSES = (RUNNING, PAUSING, PAUSED, STOPPING)
# a tick has work to do
TICKABLE_STATUSES = (RUNNING, PAUSING, STOPPING)
TERMINAL_STATUSES = (COMPLETED, FAILED, STOPPED)


def stamp() -> str:
    return utcnow().isoformat(timespec="seconds")


class SyncProgress(BaseModel):
    sync_id: str = ""
    profile_id: Optional[int] = None
    scope: str = "global"
    status: str = IDLE
    sync_type: str = "full"
    page: int = 0         # vendor page (0-based) the cursor is on
    offset: int = 0       # records of `page` already handled
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    limit: int = 0        # 0 = no test limit
    since: Optional[str] = None
    page_attempts: int = 0
    categories_synced: bool = False
    started_at: Optional[str] = None
    updated_at: Optional[str] = None
    paused_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    # the tick currently working a page; another tick leaves the run alone
    tick_owner: Optional[str] = None
    tick_started: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def lease_held(self, max_age: int) -> bool:
        """True while some tick holds a lease younger than `max_age` seconds."""
        if not self.tick_owner or not self.tick_started:
            return False
        try:
            started = datetime.fromisoformat(self.tick_started)
        except ValueError:
            return False
        return utcnow() - started < timedelta(seconds=max_age)


class SyncStateStore:
    """
    Versioned key/value rows for run state. Every write is a compare-and-swap on
    the version column, so operator signals and tick progress never overwrite
    each other.
    """

    def __init__(self, session_factory=None, max_attempts: int = 20):
        self._sessions = session_factory or get_sessionmaker()
        self.max_attempts = max_attempts

    async def load(self, key: str) -> Optional[Tuple[int, SyncProgress]]:
        async with self._sessions() as session:
            row = await session.get(SyncStateRecord, key, populate_existing=True)
            if row is None:
                return None
            return row.version, SyncProgress.model_validate(row.value or {})

    async def create_if_absent(self, key: str, value: SyncProgress) -> bool:
        async with self._sessions() as session:
            session.add(SyncStateRecord(key=key, version=1, value=value.model_dump()))
            try:
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()
                return False

    async def compare_and_swap(self, key: str, expected_version: int, value: SyncProgress) -> bool:
        value.updated_at = stamp()
        async with self._sessions() as session:
            res = await session.execute(
                sa_update(SyncStateRecord)
                .where(SyncStateRecord.key == key, SyncStateRecord.version == expected_version)
                .values(version=expected_version + 1, value=value.model_dump(), updated_at=utcnow())
            )
            await session.commit()
            return res.rowcount == 1

    async def update(
        self,
        key: str,
        mutate: Callable[[SyncProgress], Optional[SyncProgress]],
    ) -> Optional[SyncProgress]:
        """
        Read-modify-CAS loop. `mutate` receives a fresh copy and returns the new value,
        or None to leave the record unchanged. Returns the stored value.
        """
        for _ in range(self.max_attempts):
            loaded = await self.load(key)
            if loaded is None:
                return None
            version, current = loaded
            changed = mutate(current.model_copy(deep=True))
            if changed is None:
                return current
            if await self.compare_and_swap(key, version, changed):
                return changed
        raise ConcurrentUpdateError(key)

    async def list_active(self) -> List[Tuple[str, SyncProgress]]:
        async with self._sessions() as session:
            rows = (await session.scalars(select(SyncStateRecord))).all()
        out = []
        for row in rows:
            progress = SyncProgress.model_validate(row.value or {})
            if progress.status in ACTIVE_STATUSES:
                out.append((row.key, progress))
        return out
