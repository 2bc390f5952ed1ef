# importer/repositories/external_refs.py
from __future__ import annotations

from typing import Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from importer.db import get_sessionmaker
from importer.models.tables import ExternalRef


class ExternalRefStore:
    """(kind, vendor reference) -> WooCommerce id; kind is "product", "category" or "variation"."""

    def __init__(self, session_factory=None):
        self._sessions = session_factory or get_sessionmaker()

    async def get(self, kind: str, reference: str) -> Optional[int]:
        async with self._sessions() as session:
            return await session.scalar(
                select(ExternalRef.woo_id).where(ExternalRef.kind == kind, ExternalRef.reference == reference)
            )

    async def set(self, kind: str, reference: str, woo_id: int) -> None:
        for _ in range(2):
            async with self._sessions() as session:
                row = await session.scalar(
                    select(ExternalRef).where(ExternalRef.kind == kind, ExternalRef.reference == reference)
                )
                if row is None:
                    session.add(ExternalRef(kind=kind, reference=reference, woo_id=int(woo_id)))
                else:
                    row.woo_id = int(woo_id)
                try:
                    await session.commit()
                    return
                except IntegrityError:
                    await session.rollback()

    async def forget(self, kind: str, reference: str) -> None:
        async with self._sessions() as session:
            await session.execute(
                delete(ExternalRef).where(ExternalRef.kind == kind, ExternalRef.reference == reference)
            )
            await session.commit()

    async def all(self, kind: str) -> Dict[str, int]:
        async with self._sessions() as session:
            rows = await session.execute(
                select(ExternalRef.reference, ExternalRef.woo_id).where(ExternalRef.kind == kind)
            )
            return {ref: woo_id for ref, woo_id in rows.all()}
