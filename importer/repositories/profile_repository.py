# importer/repositories/profile_repository.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, select

from importer.db import get_sessionmaker
from importer.errors import ProfileError, ProfileNotFound
from importer.models.profile import DEFAULT_SLUG, SyncProfile, slugify
from importer.models.tables import Profile, utcnow
from importer.settings_store import now_stamp

logger = logging.getLogger("uvicorn.error")

_INTERVALS = {"daily": timedelta(days=1), "weekly": timedelta(days=7)}


def _to_model(row: Profile) -> SyncProfile:
    return SyncProfile(
        id=row.id,
        name=row.name,
        slug=row.slug,
        description=row.description or "",
        is_active=bool(row.is_active),
        filters=dict(row.filters or {}),
        settings=dict(row.settings or {}),
        category_mappings={str(k): int(v) for k, v in (row.category_mappings or {}).items()},
        last_sync=row.last_sync,
        created_at=row.created_at.isoformat(timespec="seconds") if row.created_at else None,
        updated_at=row.updated_at.isoformat(timespec="seconds") if row.updated_at else None,
    )


def _parse_stamp(stamp: str) -> Optional[datetime]:
    for fmt in ("%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d"):
        try:
            return datetime.strptime(stamp[:19], fmt)
        except ValueError:
            continue
    return None


class ProfileRepository:
    def __init__(self, session_factory=None):
        self._sessions = session_factory or get_sessionmaker()

    async def find(self, profile_id: int) -> Optional[SyncProfile]:
        async with self._sessions() as session:
            row = await session.get(Profile, profile_id)
        return _to_model(row) if row else None

    async def find_by_slug(self, slug: str) -> Optional[SyncProfile]:
        async with self._sessions() as session:
            row = await session.scalar(select(Profile).where(Profile.slug == slug))
        return _to_model(row) if row else None

    async def find_all(self) -> List[SyncProfile]:
        async with self._sessions() as session:
            rows = (await session.scalars(select(Profile).order_by(Profile.id))).all()
        return [_to_model(r) for r in rows]

    async def find_active(self) -> List[SyncProfile]:
        return [p for p in await self.find_all() if p.is_active]

    async def find_default(self) -> SyncProfile:
        found = await self.find_by_slug(DEFAULT_SLUG)
        if found is not None:
            return found
        logger.info("[PROFILE] creating the default profile")
        return await self.save(SyncProfile(name="Default", slug=DEFAULT_SLUG, description="All products"))

    async def _unique_slug(self, session, slug: str, exclude_id: Optional[int]) -> str:
        base, candidate, n = slug, slug, 1
        while True:
            stmt = select(func.count(Profile.id)).where(Profile.slug == candidate)
            if exclude_id:
                stmt = stmt.where(Profile.id != exclude_id)
            if not await session.scalar(stmt):
                return candidate
            n += 1
            candidate = f"{base}-{n}"

    async def save(self, profile: SyncProfile) -> SyncProfile:
        if not profile.name.strip():
            raise ProfileError("Profile name is required")

        async with self._sessions() as session:
            row = await session.get(Profile, profile.id) if profile.id else None
            if profile.id and row is None:
                raise ProfileNotFound(profile.id)

            wanted = slugify(profile.slug or profile.name)
            if row is not None and row.slug == DEFAULT_SLUG:
                wanted = DEFAULT_SLUG  # the default profile keeps its slug
            slug = await self._unique_slug(session, wanted, row.id if row else None)

            if row is None:
                row = Profile()
                session.add(row)
            row.name = profile.name.strip()
            row.slug = slug
            row.description = profile.description or ""
            row.is_active = profile.is_active
            row.filters = dict(profile.filters or {})
            row.settings = dict(profile.settings or {})
            row.category_mappings = {str(k): int(v) for k, v in (profile.category_mappings or {}).items()}
            row.last_sync = profile.last_sync
            await session.commit()
            await session.refresh(row)
            return _to_model(row)

    async def delete(self, profile_id: int) -> bool:
        async with self._sessions() as session:
            row = await session.get(Profile, profile_id)
            if row is None:
                return False
            if row.slug == DEFAULT_SLUG:
                raise ProfileError("The default profile cannot be deleted", {"id": profile_id})
            await session.delete(row)
            await session.commit()
            return True

    async def update_last_sync(self, profile_id: int, stamp: str | None = None) -> None:
        async with self._sessions() as session:
            row = await session.get(Profile, profile_id)
            if row is None:
                return
            row.last_sync = stamp or now_stamp()
            await session.commit()

    async def find_due_for_sync(self, now: datetime | None = None) -> List[SyncProfile]:
        """Active profiles on a daily/weekly schedule whose interval has elapsed (or never synced)."""
        now = now or utcnow()
        due: List[SyncProfile] = []
        for profile in await self.find_active():
            interval = _INTERVALS.get(profile.get_setting("sync_frequency"))
            if interval is None:
                continue
            last = _parse_stamp(profile.last_sync) if profile.last_sync else None
            if last is None or now - last >= interval:
                due.append(profile)
        return due
