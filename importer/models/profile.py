# importer/models/profile.py
from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

DEFAULT_SLUG = "default"

DEFAULT_FILTERS: Dict[str, Any] = {
    "category": "",          # vendor category reference
    "active": False,         # only active products
    "hasImages": False,
    "hasVariants": False,
    "productReference": "",  # SKU substring
    "productsIds": [],
    "NewerThan": "",
}

# None = use the global option
DEFAULT_SETTINGS: Dict[str, Any] = {
    "exchange_rate": None,
    "markup_percent": None,
    "price_rounding": None,
    "sync_fields": None,
    "sync_protection": None,
    "custom_patterns": None,
    "variation_mode": None,
    "sync_frequency": "manual",  # manual | daily | weekly
    "test_limit": 0,             # 0 = all products
}

SYNC_FREQUENCIES = ("manual", "daily", "weekly")


def slugify(value: str) -> str:
    value = unicodedata.normalize("NFKD", value or "").encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value).strip("-").lower()
    return value or "profile"


class SyncProfile(BaseModel):
    """Named bundle of vendor filters and sync settings, referenced by id when a run starts."""

    id: Optional[int] = None
    name: str = ""
    slug: str = ""
    description: str = ""
    is_active: bool = True
    filters: Dict[str, Any] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)
    category_mappings: Dict[str, int] = Field(default_factory=dict)
    last_sync: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def is_default(self) -> bool:
        return self.slug == DEFAULT_SLUG

    def get_filters(self) -> Dict[str, Any]:
        return {**DEFAULT_FILTERS, **(self.filters or {})}

    def get_settings(self) -> Dict[str, Any]:
        return {**DEFAULT_SETTINGS, **(self.settings or {})}

    def get_setting(self, key: str) -> Any:
        value = (self.settings or {}).get(key)
        if value is None:
            return DEFAULT_SETTINGS.get(key)
        return value

    def get_api_filters(self) -> Dict[str, Any]:
        """Filters for the vendor request body; empty strings, false flags and empty lists are dropped."""
        f = self.get_filters()
        out: Dict[str, Any] = {}
        for key in ("category", "productReference", "NewerThan"):
            if f.get(key):
                out[key] = f[key]
        for key in ("active", "hasImages", "hasVariants"):
            if f.get(key):
                out[key] = True
        if isinstance(f.get("productsIds"), list) and f["productsIds"]:
            out["productsIds"] = f["productsIds"]
        return out
