# importer/sync/components/pipe_specs.py
# The vendor "description" is a pipe-separated inventory record, not shop copy:
#   EAN|UPC|...|brand(7)|...|colour(16)|...|kg(32)|cm(33)|cm(34)|cm(35)|...|family(41)|subfamily(42)
from __future__ import annotations

import html
import re
from typing import Any, Dict, List, Optional

from importer.sync.components.attributes import strip_html
from importer.translation.translator import pick_source_text

_EAN_RE = re.compile(r"^\d{8,14}$")

TEXT_POSITIONS = {7: "brand", 16: "color", 41: "family", 42: "subfamily"}
MEASURE_POSITIONS = {32: ("weight", "kg"), 33: ("height", "cm"), 34: ("width", "cm"), 35: ("length", "cm")}

# storefront labels (Romanian shop)
LABELS = {
    "brand": "Marcă",
    "color": "Culoare",
    "weight": "Greutate",
    "height": "Înălțime",
    "width": "Lățime",
    "length": "Lungime",
    "family": "Familie",
    "subfamily": "Subfamilie",
}


def raw_description(description: Any) -> str:
    """Untranslated text of the description, whatever its shape."""
    if isinstance(description, str):
        return strip_html(description)
    # "en" has priority in pick_source_text, and "zz" never matches a real language
    text, _, _ = pick_source_text(description, "zz")
    return strip_html(text or "")


def _parts(description: Any) -> List[str]:
    text = raw_description(description)
    if not text or "|" not in text:
        return []
    return [p.strip() for p in text.split("|")]


def _is_number(s: str) -> bool:
    try:
        float(s)
        return True
    except ValueError:
        return False


def extract_ean(description: Any) -> Optional[str]:
    parts = _parts(description)
    if parts and _EAN_RE.match(parts[0]):
        return parts[0]
    return None


def extract_pipe_attributes(description: Any) -> Dict[str, str]:
    parts = _parts(description)
    if not parts:
        return {}
    out: Dict[str, str] = {}
    for pos in sorted(set(TEXT_POSITIONS) | set(MEASURE_POSITIONS)):
        if pos >= len(parts):
            continue
        val = parts[pos]
        if pos in TEXT_POSITIONS:
            if val and val not in ("/", "0"):
                out[TEXT_POSITIONS[pos]] = val
        else:
            key, unit = MEASURE_POSITIONS[pos]
            if val and _is_number(val) and float(val) > 0:
                out[key] = f"{val} {unit}"
    return out


def pipe_attributes_to_woo(attrs: Dict[str, str]) -> List[Dict[str, Any]]:
    return [
        {"name": LABELS.get(k, k.capitalize()), "options": [v], "visible": True, "variation": False}
        for k, v in attrs.items()
    ]


def build_specs_table(attrs: Dict[str, str]) -> str:
    if not attrs:
        return ""
    rows = []
    for key, value in attrs.items():
        label = html.escape(LABELS.get(key, key.capitalize()))
        rows.append(
            f'<tr class="woocommerce-product-attributes-item woocommerce-product-attributes-item--{html.escape(key)}">'
            f'<th class="woocommerce-product-attributes-item__label">{label}</th>'
            f'<td class="woocommerce-product-attributes-item__value">{html.escape(value)}</td>'
            f"</tr>"
        )
    return (
        '<table class="product-specs woocommerce-product-attributes shop_attributes"><tbody>'
        + "".join(rows)
        + "</tbody></table>"
    )
