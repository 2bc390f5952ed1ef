from __future__ import annotations

import json
import re
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple

from bs4 import BeautifulSoup

from importer.sync.components.util import lower_keys, maybe_await

BRAND_ATTRIBUTES = {"marca", "brand"}

# vendor (Spanish) aliases that carry variation dimensions
DIMENSION_ALIASES = {"peso": "weight", "ancho": "width", "alto": "height", "largo": "length"}

_URL_RE = re.compile(r"^https?://", re.I)
_FILE_RE = re.compile(r"\.(pdf|jpg|png|gif)$", re.I)
_UNIT_RE = re.compile(r"^\d+(\.\d+)?\s*(kg|cm|mm|m|g|l|ml)$", re.I)
_TAG_RE = re.compile(r"<[a-z/!][^>]*>", re.I)


def strip_html(s: str) -> str:
    """Robustly strips HTML, preserving spaces at block boundaries."""
    if not s or not _TAG_RE.search(s):
        return s or ""
    return BeautifulSoup(s, "html.parser").get_text(separator=" ", strip=True)


def iter_attributes(attrs: Any) -> Iterator[Tuple[str, Any]]:
    """
    Yield (name, raw_value) from either shape the vendor uses:
      {"color": "Rojo", ...}                      (map)
      [{"alias": "color", "value": "Rojo"}, ...]  (list of objects)
    """
    if isinstance(attrs, dict):
        items = attrs.items()
    elif isinstance(attrs, list):
        items = ((None, v) for v in attrs)
    else:
        return
    for key, val in items:
        name, value = key, val
        if isinstance(val, dict):
            low = lower_keys(val)
            if "alias" in low or "value" in low:
                name = low.get("alias") or key
                value = low.get("value", "")
        if name is None or not str(name).strip():
            continue
        yield str(name), value


async def clean_attribute_value(
    value: Any,
    translate_multilingual: Callable[[Any], Awaitable[str] | str],
) -> Optional[str]:
    """
    Reduce a raw attribute value to display text.

    - {"value": x} selections unwrap to x; other dicts are multilingual text
    - lists join with " | "
    - JSON strings: {"FILE": url} -> url, id/value maps -> joined values
    Returns None when nothing usable is left.
    """
    if isinstance(value, dict):
        low = lower_keys(value)
        if "value" in low:
            value = low["value"]
        else:
            value = await maybe_await(translate_multilingual(value))
    if isinstance(value, (list, tuple)):
        value = " | ".join(str(v) for v in value if v is not None and str(v).strip())
    if value is None or isinstance(value, bool):
        return None

    s = strip_html(str(value)).strip()
    if s.startswith("{") or s.startswith("["):
        try:
            decoded = json.loads(s)
        except ValueError:
            decoded = None
        if isinstance(decoded, dict) and "FILE" in decoded:
            return str(decoded["FILE"])
        if isinstance(decoded, (dict, list)):
            vals = decoded.values() if isinstance(decoded, dict) else decoded
            parts = [str(v) for v in vals if isinstance(v, (str, int, float)) and not isinstance(v, bool)]
            return " | ".join(parts) if parts else None
    return s or None


def format_attribute_name(name: str) -> str:
    """snake_case / kebab-case -> Title Case (only first letters are touched)."""
    words = re.sub(r"[_\-]+", " ", name or "").split(" ")
    return " ".join(w[:1].upper() + w[1:] for w in words)


def is_brand(name: str) -> bool:
    return (name or "").strip().lower() in BRAND_ATTRIBUTES


def should_translate_value(value: str) -> bool:
    """Numbers, URLs, file names and unit measurements are kept verbatim."""
    v = (value or "").strip()
    if not v:
        return False
    try:
        float(v)
        return False
    except ValueError:
        pass
    return not (_URL_RE.search(v) or _FILE_RE.search(v) or _UNIT_RE.match(v))


def collect_used_attribute_values(variants: List[Dict[str, Any]]) -> Dict[str, List[Any]]:
    """
    Collect the distinct raw attribute values used per attribute name across variants,
    in first-seen order.
    Returns: { "color": ["Rojo", "Negro"], "talla": ["M", "L"] }
    """
    used: Dict[str, List[Any]] = {}
    for variant in variants or []:
        v = lower_keys(variant)
        for name, raw in iter_attributes(v.get("attributes")):
            bucket = used.setdefault(name, [])
            if raw not in bucket:
                bucket.append(raw)
    return used
