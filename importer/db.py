# importer/db.py
from __future__ import annotations

import os
import pathlib
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    async_sessionmaker,
    AsyncSession,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from importer.config import settings

logger = logging.getLogger("uvicorn.error")

DEFAULT_DSN = "sqlite+aiosqlite:///./data/importer.db"


class Base(DeclarativeBase):
    pass


_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None
_dsn_override: Optional[str] = None


def _sqlite_file(dsn: str) -> Optional[pathlib.Path]:
    """File path behind a sqlite DSN, or None for in-memory databases."""
    _, _, tail = dsn.partition(":///")
    if not tail or tail.startswith(":memory:"):
        return None
    return pathlib.Path(tail.split("?", 1)[0]).resolve()


def _resolve_dsn() -> str:
    """
    configure() wins over settings.DATABASE_URL, which wins over the raw env
    var. Falls back to a SQLite file under ./data/.
    """
    dsn = _dsn_override or getattr(settings, "DATABASE_URL", None) or os.getenv("DATABASE_URL") or DEFAULT_DSN

    if dsn.startswith("sqlite"):
        target = _sqlite_file(dsn)
        if target is not None:
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.warning("[DB] cannot create %s: %s", target.parent, e)

    return dsn


def configure(dsn: str | None) -> None:
    """
    Point the module at another database. Drops the cached engine; callers
    that held a previous engine should dispose it themselves.
    """
    global _engine, _sessionmaker, _dsn_override
    _dsn_override = dsn
    _engine = None
    _sessionmaker = None


def get_engine() -> AsyncEngine:
    global _engine, _sessionmaker
    if _engine is None:
        url = _resolve_dsn()
        kwargs = {"echo": False, "pool_pre_ping": True}
        if url.startswith("sqlite"):
            # one connection per session, never reused across event loops
            kwargs["poolclass"] = NullPool
        _engine = create_async_engine(url, **kwargs)
        _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False)
        logger.info("[DB] engine ready (%s)", url.split("://", 1)[0])
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the current engine, creating both on first use."""
    if _sessionmaker is None:
        get_engine()
    return _sessionmaker  # type: ignore[return-value]


async def init_db() -> None:
    """
    Create every importer table that does not exist yet.
    """
    import importer.models.tables  # noqa: F401  registers the mapped classes

    engine = get_engine()
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        logger.error("[DB] schema setup failed: %s", e)
        raise


async def dispose_db() -> None:
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None
