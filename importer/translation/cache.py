# importer/translation/cache.py
from __future__ import annotations

import hashlib
import logging
from typing import Dict, Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from importer.db import get_sessionmaker
from importer.models.tables import Translation

logger = logging.getLogger("uvicorn.error")


class TranslationCache:
    """Persistent translations keyed by md5(text|source|target); writes replace by key."""

    def __init__(self, session_factory=None):
        self._sessions = session_factory or get_sessionmaker()

    @staticmethod
    def generate_hash(text: str, source_lang: str, target_lang: str) -> str:
        return hashlib.md5(f"{text}|{source_lang}|{target_lang}".encode("utf-8")).hexdigest()

    async def get(self, text: str, source_lang: str, target_lang: str) -> Optional[str]:
        key = self.generate_hash(text, source_lang, target_lang)
        async with self._sessions() as session:
            return await session.scalar(
                select(Translation.translated_text).where(Translation.source_hash == key)
            )

    async def get_batch(self, texts: Iterable[str], source_lang: str, target_lang: str) -> Dict[str, str]:
        by_hash = {self.generate_hash(t, source_lang, target_lang): t for t in texts}
        if not by_hash:
            return {}
        async with self._sessions() as session:
            rows = await session.execute(
                select(Translation.source_hash, Translation.translated_text)
                .where(Translation.source_hash.in_(list(by_hash)))
            )
            return {by_hash[h]: translated for h, translated in rows.all()}

    async def save(
        self,
        text: str,
        translated: str,
        source_lang: str,
        target_lang: str,
        service: str = "",
    ) -> None:
        key = self.generate_hash(text, source_lang, target_lang)
        async with self._sessions() as session:
            row = await session.scalar(select(Translation).where(Translation.source_hash == key))
            if row is None:
                session.add(Translation(
                    source_hash=key,
                    source_text=text,
                    translated_text=translated,
                    source_lang=source_lang,
                    target_lang=target_lang,
                    service=service,
                ))
            else:
                row.translated_text = translated
                row.service = service
            try:
                await session.commit()
                return
            except IntegrityError:
                # another writer inserted the same key first; replace its value
                await session.rollback()

        async with self._sessions() as session:
            row = await session.scalar(select(Translation).where(Translation.source_hash == key))
            if row is not None:
                row.translated_text = translated
                row.service = service
                await session.commit()

    async def clear(self) -> int:
        async with self._sessions() as session:
            res = await session.execute(delete(Translation))
            await session.commit()
        logger.info("[TRANSLATE] cache cleared (%s rows)", res.rowcount)
        return int(res.rowcount or 0)

    async def count(self) -> int:
        async with self._sessions() as session:
            return int(await session.scalar(select(func.count(Translation.id))) or 0)
