# importer/log/persistent_logger.py
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select

from importer.db import get_sessionmaker
from importer.log.live_log import add_live_entry
from importer.models.tables import SyncLog, utcnow

logger = logging.getLogger("uvicorn.error")

LEVELS = ("info", "warning", "error", "success")
MAX_ENTRIES = 1000

_CONSOLE_LEVEL = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _row_to_dict(row: SyncLog) -> Dict[str, Any]:
    return {
        "id": row.id,
        "level": row.level,
        "message": row.message,
        "sku": row.sku,
        "batch_id": row.batch_id,
        "profile_id": row.profile_id,
        "context": row.context or {},
        "created_at": row.created_at.isoformat(timespec="seconds") if row.created_at else None,
    }


class PersistentLogger:
    """
    Sync log stored in the sync_logs table, filterable by level, SKU, batch and profile.
    Every entry is mirrored to the console logger and the live log.
    """

    def __init__(self, session_factory=None, max_entries: int = MAX_ENTRIES):
        self._sessions = session_factory or get_sessionmaker()
        self.max_entries = max_entries

    async def log(
        self,
        level: str,
        message: str,
        sku: Optional[str] = None,
        batch_id: Optional[str] = None,
        profile_id: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        level = level if level in LEVELS else "info"
        tag = f"[SYNC]{'[' + sku + ']' if sku else ''}"
        logger.log(_CONSOLE_LEVEL[level], "%s %s", tag, message)
        add_live_entry(level, message, {"sku": sku, "batch_id": batch_id, "profile_id": profile_id})

        async with self._sessions() as session:
            session.add(SyncLog(
                level=level,
                message=message,
                sku=sku,
                batch_id=batch_id,
                profile_id=profile_id,
                context=context or None,
            ))
            await session.commit()
        await self._prune()

    async def info(self, message: str, **kw) -> None:
        await self.log("info", message, **kw)

    async def warning(self, message: str, **kw) -> None:
        await self.log("warning", message, **kw)

    async def error(self, message: str, **kw) -> None:
        await self.log("error", message, **kw)

    async def success(self, message: str, **kw) -> None:
        await self.log("success", message, **kw)

    async def _prune(self) -> None:
        async with self._sessions() as session:
            total = await session.scalar(select(func.count(SyncLog.id)))
            if not total or total <= self.max_entries:
                return
            # id of the oldest row to keep
            cutoff = await session.scalar(
                select(SyncLog.id).order_by(SyncLog.id.desc()).offset(self.max_entries - 1).limit(1)
            )
            if cutoff is not None:
                await session.execute(delete(SyncLog).where(SyncLog.id < cutoff))
                await session.commit()

    @staticmethod
    def _filtered(stmt, level=None, batch_id=None, sku=None, profile_id=None):
        if level:
            stmt = stmt.where(SyncLog.level == level)
        if batch_id:
            stmt = stmt.where(SyncLog.batch_id == batch_id)
        if sku:
            stmt = stmt.where(SyncLog.sku.like(f"%{sku}%"))
        if profile_id is not None:
            stmt = stmt.where(SyncLog.profile_id == profile_id)
        return stmt

    async def get_logs(
        self,
        level: Optional[str] = None,
        batch_id: Optional[str] = None,
        sku: Optional[str] = None,
        profile_id: Optional[int] = None,
        limit: int = 100,
        offset: int = 0,
        order: str = "desc",
    ) -> List[Dict[str, Any]]:
        stmt = self._filtered(select(SyncLog), level, batch_id, sku, profile_id)
        stmt = stmt.order_by(SyncLog.id.asc() if str(order).lower() == "asc" else SyncLog.id.desc())
        stmt = stmt.limit(max(1, int(limit))).offset(max(0, int(offset)))
        async with self._sessions() as session:
            rows = (await session.scalars(stmt)).all()
        return [_row_to_dict(r) for r in rows]

    async def get_count(
        self,
        level: Optional[str] = None,
        batch_id: Optional[str] = None,
        sku: Optional[str] = None,
        profile_id: Optional[int] = None,
    ) -> int:
        stmt = self._filtered(select(func.count(SyncLog.id)), level, batch_id, sku, profile_id)
        async with self._sessions() as session:
            return int(await session.scalar(stmt) or 0)

    async def get_error_count_for_batch(self, batch_id: str) -> int:
        return await self.get_count(level="error", batch_id=batch_id)

    async def clear_all(self) -> int:
        return await self._delete()

    async def clear_for_profile(self, profile_id: int) -> int:
        return await self._delete(SyncLog.profile_id == profile_id)

    async def clear_older_than(self, days: int) -> int:
        cutoff = utcnow() - timedelta(days=int(days))
        return await self._delete(SyncLog.created_at < cutoff)

    async def _delete(self, *where) -> int:
        async with self._sessions() as session:
            res = await session.execute(delete(SyncLog).where(*where))
            await session.commit()
            return int(res.rowcount or 0)
