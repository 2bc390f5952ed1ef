#==========================================================================================
# importer/translation/backends.py
# Pluggable machine-translation services: Google, DeepL and an OpenRouter chat model.
# Every backend offers translate() and translate_batch() and raises TranslationError.
#==========================================================================================
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, List, Protocol

from importer.config import settings
from importer.errors import ConfigurationError, TranslationError, UpstreamError
from importer.http_client import HttpClient

logger = logging.getLogger("uvicorn.error")

GOOGLE_ENDPOINT = "https://translation.googleapis.com/language/translate/v2"
DEEPL_FREE_ENDPOINT = "https://api-free.deepl.com/v2/translate"
DEEPL_PRO_ENDPOINT = "https://api.deepl.com/v2/translate"
OPENROUTER_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"


class TranslationBackend(Protocol):
    name: str

    async def translate(self, text: str, source_lang: str, target_lang: str) -> str: ...

    async def translate_batch(self, texts: List[str], source_lang: str, target_lang: str) -> List[str]: ...


# ---- Google ----

class GoogleTranslateBackend:
    name = "google"

    def __init__(self, api_key: str, http: HttpClient | None = None):
        if not (api_key or "").strip():
            raise ConfigurationError("Google Translate API key is required")
        self.api_key = api_key.strip()
        self.http = http or HttpClient()

    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        out = await self.translate_batch([text], source_lang, target_lang)
        return out[0] if out else text

    async def translate_batch(self, texts: List[str], source_lang: str, target_lang: str) -> List[str]:
        if not texts:
            return []
        body = {"q": list(texts), "source": source_lang, "target": target_lang, "format": "text"}
        try:
            payload = await self.http.post(f"{GOOGLE_ENDPOINT}?key={self.api_key}", json_body=body)
        except UpstreamError as e:
            raise TranslationError(f"Google Translate failed: {e.message}", service=self.name) from e

        rows = ((payload or {}).get("data") or {}).get("translations")
        if not isinstance(rows, list):
            raise TranslationError("Invalid response from Google Translate", service=self.name)
        return [str(r.get("translatedText", "")) for r in rows]


# ---- DeepL ----

class DeepLTranslateBackend:
    name = "deepl"

    def __init__(self, api_key: str, http: HttpClient | None = None):
        if not (api_key or "").strip():
            raise ConfigurationError("DeepL API key is required")
        self.api_key = api_key.strip()
        self.http = http or HttpClient()

    @property
    def endpoint(self) -> str:
        # free-tier keys carry an ":fx" suffix
        return DEEPL_FREE_ENDPOINT if self.api_key.endswith(":fx") else DEEPL_PRO_ENDPOINT

    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        out = await self.translate_batch([text], source_lang, target_lang)
        return out[0] if out else text

    async def translate_batch(self, texts: List[str], source_lang: str, target_lang: str) -> List[str]:
        if not texts:
            return []
        body = {
            "text": list(texts),
            "source_lang": source_lang.upper(),
            "target_lang": target_lang.upper(),
        }
        headers = {
            "Authorization": f"DeepL-Auth-Key {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            payload = await self.http.post(self.endpoint, json_body=body, headers=headers)
        except UpstreamError as e:
            raise TranslationError(f"DeepL translation failed: {e.message}", service=self.name) from e

        rows = (payload or {}).get("translations")
        if not isinstance(rows, list):
            raise TranslationError("Invalid response from DeepL API", service=self.name)
        return [str(r.get("text", "")) for r in rows]


# ---- OpenRouter (LLM chat completion) ----

# reasoning models spend minutes per call; useless for bulk catalog text
_SLOW_MODEL_RE = re.compile(
    r"(?i)(^|/)(o1|o3|o4)(-|$)|deepseek-r1|reasoner|reasoning|thinking|qwq"
)

_NUMBERED_LINE_RE = re.compile(r"^\s*(\d+)\s*[\.\):\-]\s?(.*)$")


def is_slow_model(model: str) -> bool:
    return bool(_SLOW_MODEL_RE.search(model or ""))


def encode_numbered_list(texts: List[str]) -> str:
    return "\n".join(f"{i}. {' '.join(str(t).split())}" for i, t in enumerate(texts, start=1))


def parse_numbered_list(output: str, originals: List[str]) -> List[str]:
    """Map "N. text" lines back to positions; anything missing keeps its original."""
    found: Dict[int, str] = {}
    for line in (output or "").splitlines():
        m = _NUMBERED_LINE_RE.match(line)
        if not m:
            continue
        idx = int(m.group(1)) - 1
        value = m.group(2).strip()
        if 0 <= idx < len(originals) and value and idx not in found:
            found[idx] = value
    return [found.get(i, original) for i, original in enumerate(originals)]


class OpenRouterTranslateBackend:
    name = "openrouter"

    BATCH_RETRY_DELAY = 2.0

    def __init__(
        self,
        api_key: str,
        model: str,
        http: HttpClient | None = None,
        refuse_slow_models: bool = True,
        timeout: float | None = None,
    ):
        if not (api_key or "").strip():
            raise ConfigurationError("OpenRouter API key is required")
        self.api_key = api_key.strip()
        self.model = (model or "").strip() or settings.OPENROUTER_MODEL
        self.http = http or HttpClient()
        self.refuse_slow_models = refuse_slow_models
        self.timeout = timeout or settings.LLM_HTTP_TIMEOUT

    def _refused(self) -> bool:
        if self.refuse_slow_models and is_slow_model(self.model):
            logger.warning("[TRANSLATE] model %s is too slow for catalog text; returning input unchanged", self.model)
            return True
        return False

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "HTTP-Referer": settings.WC_BASE_URL or "http://localhost",
            "X-Title": "Catalog Importer",
        }

    async def _complete(self, system_prompt: str, content: str) -> str:
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": content},
            ],
        }
        try:
            payload = await self.http.post(
                OPENROUTER_ENDPOINT, json_body=body, headers=self._headers(), timeout=self.timeout
            )
        except UpstreamError as e:
            raise TranslationError(f"OpenRouter error: {e.message}", service=self.name) from e
        try:
            return str(payload["choices"][0]["message"]["content"]).strip()
        except (KeyError, IndexError, TypeError):
            raise TranslationError("Invalid response structure from OpenRouter", service=self.name)

    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        if not (text or "").strip() or self._refused():
            return text
        prompt = (
            f"You are a professional translator. Translate the following e-commerce product text "
            f"from {source_lang} to {target_lang}. Return ONLY the translation, no extra text, no quotes."
        )
        return await self._complete(prompt, text)

    async def translate_batch(self, texts: List[str], source_lang: str, target_lang: str) -> List[str]:
        if not texts:
            return []
        if self._refused():
            return list(texts)
        prompt = (
            f"You are a professional translator. Translate each numbered line of e-commerce product "
            f"text from {source_lang} to {target_lang}. Answer with the same numbered list, one line "
            f"per item, in the form 'N. translation'. No extra text, no quotes."
        )
        content = encode_numbered_list(texts)
        try:
            output = await self._complete(prompt, content)
        except TranslationError as e:
            logger.warning("[TRANSLATE] OpenRouter batch failed (%s); retrying once", e.message)
            await asyncio.sleep(self.BATCH_RETRY_DELAY)
            output = await self._complete(prompt, content)
        return parse_numbered_list(output, list(texts))


def build_translation_backend(options: Dict[str, Any], http: HttpClient | None = None) -> TranslationBackend:
    """Pick the backend named by options["translation_driver"]."""
    driver = str(options.get("translation_driver") or "google").strip().lower()
    if driver == "google":
        return GoogleTranslateBackend(options.get("translate_api_key") or "", http)
    if driver == "deepl":
        return DeepLTranslateBackend(options.get("deepl_api_key") or "", http)
    if driver == "openrouter":
        llm_http = http or HttpClient(timeout=settings.LLM_HTTP_TIMEOUT)
        return OpenRouterTranslateBackend(
            options.get("openrouter_api_key") or "",
            options.get("openrouter_model") or settings.OPENROUTER_MODEL,
            llm_http,
            refuse_slow_models=bool(options.get("openrouter_refuse_slow_models", settings.OPENROUTER_REFUSE_SLOW_MODELS)),
        )
    raise ConfigurationError(f"Unknown translation driver: {driver}")
