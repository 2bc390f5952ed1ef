# importer/sync/history.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select

from importer.db import get_sessionmaker
from importer.models.tables import SyncHistoryRecord, utcnow

STATUSES = ("running", "completed", "failed", "stopped", "paused")
TYPES = ("full", "incremental")

_COUNTERS = {
    "processed": "products_processed",
    "created": "products_created",
    "updated": "products_updated",
    "failed": "products_failed",
    "error_count": "error_count",
}


def format_duration(seconds: Optional[int]) -> str:
    if seconds is None:
        return "-"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def _to_dict(row: SyncHistoryRecord) -> Dict[str, Any]:
    return {
        "sync_id": row.sync_id,
        "profile_id": row.profile_id,
        "sync_type": row.sync_type,
        "status": row.status,
        "started_at": row.started_at.isoformat(timespec="seconds") if row.started_at else None,
        "completed_at": row.completed_at.isoformat(timespec="seconds") if row.completed_at else None,
        "duration_seconds": row.duration_seconds,
        "duration": format_duration(row.duration_seconds),
        "products_processed": row.products_processed,
        "products_created": row.products_created,
        "products_updated": row.products_updated,
        "products_failed": row.products_failed,
        "error_count": row.error_count,
        "error_message": row.error_message,
    }


class SyncHistory:
    """One sync_history row per run: timing, totals and final status."""

    def __init__(self, session_factory=None):
        self._sessions = session_factory or get_sessionmaker()

    async def create(self, sync_id: str, sync_type: str = "full", profile_id: Optional[int] = None) -> None:
        async with self._sessions() as session:
            session.add(SyncHistoryRecord(
                sync_id=sync_id,
                sync_type=sync_type if sync_type in TYPES else "full",
                profile_id=profile_id,
                status="running",
                started_at=utcnow(),
            ))
            await session.commit()

    async def _apply(self, sync_id: str, status: Optional[str] = None, finished: bool = False,
                     error: Optional[str] = None, **counters: int) -> None:
        async with self._sessions() as session:
            row = await session.scalar(select(SyncHistoryRecord).where(SyncHistoryRecord.sync_id == sync_id))
            if row is None:
                return
            for key, value in counters.items():
                column = _COUNTERS.get(key)
                if column and value is not None:
                    setattr(row, column, int(value))
            if status:
                row.status = status
            if error is not None:
                row.error_message = error
            if finished:
                row.completed_at = utcnow()
                if row.started_at:
                    row.duration_seconds = int((row.completed_at - row.started_at).total_seconds())
            elif status == "running":
                row.completed_at = None
                row.duration_seconds = None
            await session.commit()

    async def update(self, sync_id: str, **counters: int) -> None:
        await self._apply(sync_id, **counters)

    async def complete(self, sync_id: str, **counters: int) -> None:
        await self._apply(sync_id, status="completed", finished=True, **counters)

    async def fail(self, sync_id: str, error: str, **counters: int) -> None:
        await self._apply(sync_id, status="failed", finished=True, error=error, **counters)

    async def stop(self, sync_id: str, **counters: int) -> None:
        await self._apply(sync_id, status="stopped", finished=True, **counters)

    async def pause(self, sync_id: str) -> None:
        await self._apply(sync_id, status="paused")

    async def resume(self, sync_id: str) -> None:
        await self._apply(sync_id, status="running")

    async def get(self, sync_id: str) -> Optional[Dict[str, Any]]:
        async with self._sessions() as session:
            row = await session.scalar(select(SyncHistoryRecord).where(SyncHistoryRecord.sync_id == sync_id))
        return _to_dict(row) if row else None

    async def get_recent(self, limit: int = 20, profile_id: Optional[int] = None) -> List[Dict[str, Any]]:
        stmt = select(SyncHistoryRecord).order_by(SyncHistoryRecord.id.desc()).limit(max(1, int(limit)))
        if profile_id is not None:
            stmt = stmt.where(SyncHistoryRecord.profile_id == profile_id)
        async with self._sessions() as session:
            rows = (await session.scalars(stmt)).all()
        return [_to_dict(r) for r in rows]

    async def has_running_sync(self) -> bool:
        async with self._sessions() as session:
            n = await session.scalar(
                select(func.count(SyncHistoryRecord.id)).where(SyncHistoryRecord.status == "running")
            )
        return bool(n)

    async def get_stats(self) -> Dict[str, Any]:
        async with self._sessions() as session:
            total = await session.scalar(select(func.count(SyncHistoryRecord.id))) or 0
            by_status = dict((await session.execute(
                select(SyncHistoryRecord.status, func.count(SyncHistoryRecord.id)).group_by(SyncHistoryRecord.status)
            )).all())
            sums = (await session.execute(select(
                func.coalesce(func.sum(SyncHistoryRecord.products_processed), 0),
                func.coalesce(func.sum(SyncHistoryRecord.products_created), 0),
                func.coalesce(func.sum(SyncHistoryRecord.products_updated), 0),
                func.coalesce(func.sum(SyncHistoryRecord.products_failed), 0),
                func.avg(SyncHistoryRecord.duration_seconds),
            ))).one()
            last = await session.scalar(
                select(SyncHistoryRecord)
                .where(SyncHistoryRecord.status == "completed")
                .order_by(SyncHistoryRecord.id.desc())
                .limit(1)
            )
        avg = int(sums[4]) if sums[4] is not None else None
        return {
            "total_syncs": int(total),
            "by_status": {s: int(by_status.get(s, 0)) for s in STATUSES},
            "total_processed": int(sums[0]),
            "total_created": int(sums[1]),
            "total_updated": int(sums[2]),
            "total_failed": int(sums[3]),
            "average_duration": format_duration(avg),
            "last_completed": _to_dict(last) if last else None,
        }

    async def cleanup(self, keep: int = 50) -> int:
        async with self._sessions() as session:
            cutoff = await session.scalar(
                select(SyncHistoryRecord.id).order_by(SyncHistoryRecord.id.desc()).offset(max(0, keep - 1)).limit(1)
            )
            if cutoff is None:
                return 0
            res = await session.execute(delete(SyncHistoryRecord).where(SyncHistoryRecord.id < cutoff))
            await session.commit()
            return int(res.rowcount or 0)
