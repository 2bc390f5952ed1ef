# importer/sync/components/util.py
from __future__ import annotations

import inspect
from typing import Any, Dict


async def maybe_await(x):
    if inspect.isawaitable(x):
        return await x
    return x


def lower_keys(record: Dict[str, Any] | None) -> Dict[str, Any]:
    """Vendor payloads mix PascalCase and camelCase; compare on lower-cased keys."""
    return {str(k).lower(): v for k, v in (record or {}).items()} if isinstance(record, dict) else {}


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


def ref_of(item: Any) -> str:
    """Reference of a category/image entry given as a plain string or an object."""
    if isinstance(item, dict):
        low = lower_keys(item)
        return str(low.get("reference") or low.get("url") or "").strip()
    return str(item or "").strip()
