# importer/sync/components/price.py
from __future__ import annotations
from typing import Any, Dict


def to_number(v: Any) -> float:
    """Numeric-like vendor value -> float; anything unusable counts as 0."""
    if isinstance(v, bool):
        return 0.0
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        try:
            return float(v.strip().replace(",", "."))
        except ValueError:
            return 0.0
    return 0.0


def pick_price(record: Dict[str, Any], source: str, fallback: str | None = None) -> float:
    """
    Read the configured price field ("rrp" or "net") from a lower-cased record.
    Variants often carry only "net"; `fallback` names the field to use then.
    """
    value = to_number(record.get(source))
    if value <= 0 and fallback and fallback != source:
        value = to_number(record.get(fallback))
    return value
