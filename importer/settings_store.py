#==========================================================================================
# importer/settings_store.py
# Operator-editable options (config_options table) and the per-profile overlay on top.
#==========================================================================================
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from sqlalchemy import select

from importer.config import settings
from importer.db import get_sessionmaker
from importer.errors import ConfigurationError
from importer.models.profile import SYNC_FREQUENCIES, SyncProfile
from importer.models.tables import ConfigOption
from importer.pricing.converter import ROUNDING_POLICIES

logger = logging.getLogger("uvicorn.error")

TRANSLATION_DRIVERS = ("google", "deepl", "openrouter")
VARIATION_MODES = ("variable", "simple")
SECRET_KEYS = ("api_key", "translate_api_key", "deepl_api_key", "openrouter_api_key")


def _defaults() -> Dict[str, Any]:
    return {
        "api_key": settings.VENDOR_API_KEY,
        "translation_driver": settings.TRANSLATION_DRIVER,
        "translate_api_key": settings.TRANSLATE_API_KEY,
        "deepl_api_key": settings.DEEPL_API_KEY,
        "openrouter_api_key": settings.OPENROUTER_API_KEY,
        "openrouter_model": settings.OPENROUTER_MODEL,
        "openrouter_refuse_slow_models": settings.OPENROUTER_REFUSE_SLOW_MODELS,
        "exchange_rate": settings.EXCHANGE_RATE,
        "source_currency": settings.SOURCE_CURRENCY,
        "target_currency": settings.TARGET_CURRENCY,
        "markup_percent": settings.MARKUP_PERCENT,
        "price_rounding": settings.PRICE_ROUNDING,
        "sync_fields": dict(settings.SYNC_FIELDS),
        "sync_protection": {},
        "custom_patterns": {},
        "variation_mode": "variable",
        "target_language": settings.TARGET_LANGUAGE,
        "sync_frequency": "daily",
        "create_missing_categories": False,
        "last_sync": None,
    }


def now_stamp() -> str:
    """UTC timestamp in the vendor's NewerThan format."""
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime())


def mask_secret(value: Any) -> str:
    s = str(value or "")
    if not s:
        return ""
    return ("*" * max(0, len(s) - 4)) + s[-4:]


def _validate(key: str, value: Any) -> Any:
    if key in ("exchange_rate", "markup_percent"):
        try:
            num = float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{key} must be a number", {"key": key, "value": value})
        if num < 0 or (key == "exchange_rate" and num == 0):
            raise ConfigurationError(f"{key} out of range", {"key": key, "value": value})
        return num
    if key == "translation_driver" and value not in TRANSLATION_DRIVERS:
        raise ConfigurationError(f"Unknown translation driver: {value}", {"allowed": list(TRANSLATION_DRIVERS)})
    if key == "price_rounding" and value not in ROUNDING_POLICIES:
        raise ConfigurationError(f"Unknown rounding policy: {value}", {"allowed": list(ROUNDING_POLICIES)})
    if key == "variation_mode" and value not in VARIATION_MODES:
        raise ConfigurationError(f"Unknown variation mode: {value}", {"allowed": list(VARIATION_MODES)})
    if key == "sync_frequency" and value not in SYNC_FREQUENCIES:
        raise ConfigurationError(f"Unknown sync frequency: {value}", {"allowed": list(SYNC_FREQUENCIES)})
    if key in ("sync_fields", "sync_protection", "custom_patterns") and not isinstance(value, dict):
        raise ConfigurationError(f"{key} must be an object", {"key": key})
    if key == "target_language" and not str(value or "").strip():
        raise ConfigurationError("Target language is required")
    return value


class ImporterConfig:
    """Flat key/value options; unset keys fall back to the environment-derived defaults."""

    def __init__(self, session_factory=None):
        self._sessions = session_factory or get_sessionmaker()

    @staticmethod
    def defaults() -> Dict[str, Any]:
        return _defaults()

    async def get(self, key: str) -> Any:
        async with self._sessions() as session:
            row = await session.get(ConfigOption, key)
        if row is None:
            return _defaults().get(key)
        return row.value

    async def get_all(self) -> Dict[str, Any]:
        values = _defaults()
        async with self._sessions() as session:
            rows = (await session.scalars(select(ConfigOption))).all()
        for row in rows:
            values[row.key] = row.value
        return values

    async def set(self, key: str, value: Any) -> None:
        await self.set_many({key: value})

    async def set_many(self, values: Dict[str, Any]) -> Dict[str, Any]:
        known = _defaults()
        clean: Dict[str, Any] = {}
        for key, value in (values or {}).items():
            if key not in known:
                raise ConfigurationError(f"Unknown option: {key}", {"key": key})
            clean[key] = _validate(key, value)

        async with self._sessions() as session:
            for key, value in clean.items():
                row = await session.get(ConfigOption, key)
                if row is None:
                    session.add(ConfigOption(key=key, value=value))
                else:
                    row.value = value
            await session.commit()
        if clean:
            logger.info("[CONFIG] updated %s", ", ".join(sorted(clean)))
        return clean

    async def get_last_sync(self) -> Optional[str]:
        return (await self.get("last_sync")) or None

    async def update_last_sync(self, stamp: str | None = None) -> str:
        stamp = stamp or now_stamp()
        await self.set_many({"last_sync": stamp})
        return stamp

    @staticmethod
    def public_view(values: Dict[str, Any]) -> Dict[str, Any]:
        out = dict(values)
        for key in SECRET_KEYS:
            if key in out:
                out[key] = mask_secret(out[key])
        return out


class ProfileConfiguration:
    """Effective settings for one run: profile overrides first, global options second."""

    def __init__(
        self,
        profile: SyncProfile | None,
        options: Dict[str, Any],
        global_category_mappings: Dict[str, int] | None = None,
    ):
        self.profile = profile or SyncProfile(name="Default", slug="default")
        self.options = {**_defaults(), **(options or {})}
        self.global_category_mappings = dict(global_category_mappings or {})

    def _override(self, key: str) -> Any:
        return (self.profile.settings or {}).get(key)

    def uses_global_setting(self, key: str) -> bool:
        return self._override(key) is None

    def get_profile_id(self) -> Optional[int]:
        return self.profile.id

    def get_profile_name(self) -> str:
        return self.profile.name

    def get_api_filters(self) -> Dict[str, Any]:
        return self.profile.get_api_filters()

    def get_api_key(self) -> str:
        return str(self.options.get("api_key") or "")

    def get_target_language(self) -> str:
        return str(self.options.get("target_language") or "")

    def get_source_currency(self) -> str:
        return str(self.options.get("source_currency") or "EUR")

    def get_target_currency(self) -> str:
        return str(self.options.get("target_currency") or "RON")

    def get_exchange_rate(self) -> float:
        v = self._override("exchange_rate")
        return float(v) if v is not None else float(self.options["exchange_rate"])

    def get_markup_percent(self) -> float:
        v = self._override("markup_percent")
        return float(v) if v is not None else float(self.options["markup_percent"])

    def get_price_rounding(self) -> str:
        v = self._override("price_rounding")
        v = v if v is not None else self.options.get("price_rounding")
        return v if v in ROUNDING_POLICIES else "none"

    def get_sync_fields(self) -> Dict[str, Any]:
        v = self._override("sync_fields")
        return dict(v) if isinstance(v, dict) else dict(self.options.get("sync_fields") or {})

    def get_sync_protection(self) -> Dict[str, Any]:
        v = self._override("sync_protection")
        return dict(v) if isinstance(v, dict) else dict(self.options.get("sync_protection") or {})

    def get_custom_patterns(self) -> Dict[str, str]:
        v = self._override("custom_patterns")
        return dict(v) if isinstance(v, dict) else dict(self.options.get("custom_patterns") or {})

    def get_variation_mode(self) -> str:
        v = self._override("variation_mode")
        if v is not None:
            return v if v in VARIATION_MODES else "variable"
        mode = self.options.get("variation_mode")
        return mode if mode in VARIATION_MODES else "variable"

    def get_sync_frequency(self) -> str:
        v = self.profile.get_setting("sync_frequency")
        return v if v in SYNC_FREQUENCIES else "manual"

    def get_test_limit(self) -> int:
        try:
            return max(0, int(self.profile.get_setting("test_limit") or 0))
        except (TypeError, ValueError):
            return 0

    def get_last_sync(self) -> Optional[str]:
        return self.profile.last_sync or self.options.get("last_sync") or None

    def creates_missing_categories(self) -> bool:
        return bool(self.options.get("create_missing_categories"))

    def get_category_mappings(self) -> Dict[str, int]:
        merged = dict(self.global_category_mappings)
        merged.update({str(k): int(v) for k, v in (self.profile.category_mappings or {}).items()})
        return merged

    def get_translation_options(self) -> Dict[str, Any]:
        keys = (
            "translation_driver", "translate_api_key", "deepl_api_key",
            "openrouter_api_key", "openrouter_model", "openrouter_refuse_slow_models",
        )
        return {k: self.options.get(k) for k in keys}

    def to_display(self) -> Dict[str, Any]:
        return {
            "profile": self.profile.model_dump(),
            "effective": {
                "exchange_rate": self.get_exchange_rate(),
                "markup_percent": self.get_markup_percent(),
                "price_rounding": self.get_price_rounding(),
                "sync_fields": self.get_sync_fields(),
                "sync_protection": self.get_sync_protection(),
                "custom_patterns": self.get_custom_patterns(),
                "variation_mode": self.get_variation_mode(),
                "sync_frequency": self.get_sync_frequency(),
                "test_limit": self.get_test_limit(),
            },
            "uses_global": {
                k: self.uses_global_setting(k)
                for k in ("exchange_rate", "markup_percent", "price_rounding", "sync_fields",
                          "sync_protection", "custom_patterns", "variation_mode")
            },
        }
