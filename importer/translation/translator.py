# importer/translation/translator.py
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from importer.errors import ConfigurationError, ImporterError
from importer.translation.backends import TranslationBackend
from importer.translation.cache import TranslationCache

logger = logging.getLogger("uvicorn.error")

LANGUAGE_PRIORITY = ["en", "es", "de", "fr", "it"]
VENDOR_LANGUAGE = "es"


def normalize_lang(lang: Optional[str]) -> str:
    """Lower-case a language code; blank, "auto" or oversized codes mean the vendor's Spanish."""
    code = (lang or "").strip().lower()
    if not code or code == "auto" or len(code) > 5:
        return VENDOR_LANGUAGE
    return code


def _ci(d: Dict[str, Any], key: str) -> Any:
    for k, v in d.items():
        if str(k).lower() == key.lower():
            return v
    return None


def _text(v: Any) -> str:
    return v.strip() if isinstance(v, str) else ""


def pick_source_text(obj: Any, target_language: str) -> Tuple[str, Optional[str], bool]:
    """
    Choose the text to use from a multilingual value.

    Returns (text, source_lang, verbatim): verbatim means the target language was
    already present and no translation is needed.
    """
    if obj is None:
        return "", None, True
    if isinstance(obj, str):
        return obj, None, True
    if not isinstance(obj, dict) or not obj:
        return "", None, True

    target = target_language.lower()
    translations = _ci(obj, "translations")
    if isinstance(translations, list):
        entries: List[Tuple[str, str]] = []
        default_lang = _text(_ci(obj, "defaultLanguageCode")).lower() or None
        for row in translations:
            if not isinstance(row, dict):
                continue
            lang = _text(_ci(row, "reference") or _ci(row, "languageCode")).lower()
            entries.append((lang, _text(_ci(row, "value"))))
        for lang, value in entries:
            if lang == target and value:
                return value, lang, True
        for wanted in LANGUAGE_PRIORITY:
            for lang, value in entries:
                if lang == wanted and value:
                    return value, lang, False
        for lang, value in entries:
            if value:
                return value, lang or default_lang, False
        return "", None, True

    # flat {lang: text}
    flat = {str(k).lower(): _text(v) for k, v in obj.items()}
    if flat.get(target):
        return flat[target], target, True
    for wanted in LANGUAGE_PRIORITY:
        if flat.get(wanted):
            return flat[wanted], wanted, False
    for lang, value in flat.items():
        if value:
            return value, lang, False
    return "", None, True


class Translator:
    def __init__(
        self,
        backend: TranslationBackend,
        target_language: str,
        cache: Optional[TranslationCache] = None,
    ):
        if not (target_language or "").strip():
            raise ConfigurationError("Target language is required")
        self.backend = backend
        self.target_language = target_language.strip().lower()
        self.cache = cache
        self._memo: Dict[str, str] = {}

    @property
    def service_name(self) -> str:
        return getattr(self.backend, "name", type(self.backend).__name__)

    def _key(self, text: str, source_lang: str) -> str:
        return TranslationCache.generate_hash(text, source_lang, self.target_language)

    async def translate(self, text: str, source_lang: str = VENDOR_LANGUAGE) -> str:
        text = (text or "").strip()
        if not text:
            return ""
        src = normalize_lang(source_lang)
        if src == self.target_language:
            return text

        key = self._key(text, src)
        if key in self._memo:
            return self._memo[key]

        if self.cache is not None:
            cached = await self.cache.get(text, src, self.target_language)
            if cached is not None:
                self._memo[key] = cached
                return cached

        try:
            translated = await self.backend.translate(text, src, self.target_language)
        except ImporterError as e:
            logger.warning("[TRANSLATE] %s failed for %r: %s", self.service_name, text[:80], e.message)
            return text
        except Exception as e:
            logger.warning("[TRANSLATE] %s failed for %r: %s", self.service_name, text[:80], e)
            return text

        translated = translated or text
        self._memo[key] = translated
        if self.cache is not None:
            await self.cache.save(text, translated, src, self.target_language, self.service_name)
        return translated

    async def translate_multilingual(self, obj: Any) -> str:
        text, lang, verbatim = pick_source_text(obj, self.target_language)
        if verbatim or not text:
            return text
        return await self.translate(text, lang or VENDOR_LANGUAGE)

    async def translate_batch(self, texts: List[str], source_lang: str = VENDOR_LANGUAGE) -> List[str]:
        if not texts:
            return []
        src = normalize_lang(source_lang)
        cleaned = [(t or "").strip() for t in texts]
        if src == self.target_language:
            return cleaned

        results: List[Optional[str]] = [None] * len(cleaned)
        pending: List[int] = []
        for i, text in enumerate(cleaned):
            if not text:
                results[i] = ""
                continue
            memo = self._memo.get(self._key(text, src))
            if memo is not None:
                results[i] = memo
            else:
                pending.append(i)

        if pending and self.cache is not None:
            hits = await self.cache.get_batch({cleaned[i] for i in pending}, src, self.target_language)
            still: List[int] = []
            for i in pending:
                hit = hits.get(cleaned[i])
                if hit is not None:
                    results[i] = hit
                    self._memo[self._key(cleaned[i], src)] = hit
                else:
                    still.append(i)
            pending = still

        if pending:
            unique = list(dict.fromkeys(cleaned[i] for i in pending))
            translated: List[str] = []
            try:
                translated = list(await self.backend.translate_batch(unique, src, self.target_language))
            except Exception as e:
                msg = e.message if isinstance(e, ImporterError) else str(e)
                logger.warning("[TRANSLATE] %s batch of %s failed: %s", self.service_name, len(unique), msg)

            done: Dict[str, str] = {}
            for text, value in zip(unique, translated):
                if value:
                    done[text] = value
            if len(translated) < len(unique) and translated:
                logger.warning("[TRANSLATE] %s returned %s of %s items", self.service_name, len(translated), len(unique))

            for text, value in done.items():
                self._memo[self._key(text, src)] = value
                if self.cache is not None:
                    await self.cache.save(text, value, src, self.target_language, self.service_name)
            for i in pending:
                results[i] = done.get(cleaned[i], cleaned[i])

        return [r if r is not None else "" for r in results]

    async def prefetch(self, values: Iterable[Any]) -> int:
        """
        Warm the cache for many multilingual values at once: one batch call per
        source language. Returns the number of distinct texts requested.
        """
        by_lang: Dict[str, List[str]] = defaultdict(list)
        for obj in values:
            text, lang, verbatim = pick_source_text(obj, self.target_language)
            if verbatim or not text:
                continue
            by_lang[normalize_lang(lang)].append(text)

        sent = 0
        for lang, texts in by_lang.items():
            unique = list(dict.fromkeys(t.strip() for t in texts if t.strip()))
            if not unique:
                continue
            await self.translate_batch(unique, lang)
            sent += len(unique)
        return sent
