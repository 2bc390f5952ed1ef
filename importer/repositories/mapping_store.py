#===========================================================================
# importer/repositories/mapping_store.py
# Vendor category reference -> WooCommerce category id.
# "auto" rows are written by category sync; "manual" rows by the operator
# and always win. Sync never touches manual rows.
#===========================================================================
from __future__ import annotations

from typing import Dict, List, Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from importer.db import get_sessionmaker
from importer.models.tables import CategoryMapping

AUTO = "auto"
MANUAL = "manual"


class CategoryMappingStore:
    def __init__(self, session_factory=None):
        self._sessions = session_factory or get_sessionmaker()

    async def _get(self, source: str) -> Dict[str, int]:
        async with self._sessions() as session:
            rows = await session.execute(
                select(CategoryMapping.reference, CategoryMapping.woo_id)
                .where(CategoryMapping.source == source, CategoryMapping.profile_id == 0)
            )
            return {ref: woo_id for ref, woo_id in rows.all()}

    async def _upsert(self, source: str, reference: str, woo_id: int) -> None:
        for _ in range(2):
            async with self._sessions() as session:
                row = await session.scalar(
                    select(CategoryMapping).where(
                        CategoryMapping.reference == reference,
                        CategoryMapping.source == source,
                        CategoryMapping.profile_id == 0,
                    )
                )
                if row is None:
                    session.add(CategoryMapping(reference=reference, source=source, profile_id=0, woo_id=int(woo_id)))
                else:
                    row.woo_id = int(woo_id)
                try:
                    await session.commit()
                    return
                except IntegrityError:
                    await session.rollback()

    async def get_auto(self) -> Dict[str, int]:
        return await self._get(AUTO)

    async def get_manual(self) -> Dict[str, int]:
        return await self._get(MANUAL)

    async def get_combined(self) -> Dict[str, int]:
        combined = await self.get_auto()
        combined.update(await self.get_manual())
        return combined

    async def set_auto(self, reference: str, woo_id: int) -> None:
        await self._upsert(AUTO, reference, woo_id)

    async def set_manual(self, reference: str, woo_id: int) -> None:
        await self._upsert(MANUAL, reference, woo_id)

    async def delete_manual(self, reference: str) -> bool:
        async with self._sessions() as session:
            res = await session.execute(
                delete(CategoryMapping).where(
                    CategoryMapping.reference == reference,
                    CategoryMapping.source == MANUAL,
                    CategoryMapping.profile_id == 0,
                )
            )
            await session.commit()
            return bool(res.rowcount)

    async def list_rows(self) -> List[Dict[str, Any]]:
        """Every reference with its auto/manual ids and the effective one, for the admin UI."""
        auto, manual = await self.get_auto(), await self.get_manual()
        rows = []
        for ref in sorted(set(auto) | set(manual)):
            rows.append({
                "reference": ref,
                "auto": auto.get(ref),
                "manual": manual.get(ref),
                "effective": manual.get(ref, auto.get(ref)),
            })
        return rows
