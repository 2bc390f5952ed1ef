# importer/pricing/rates.py
from __future__ import annotations

from typing import Dict, Protocol

from importer.errors import ExchangeRateNotFound


class ExchangeRateProvider(Protocol):
    def get_rate(self, from_currency: str, to_currency: str) -> float: ...


class FixedExchangeRateProvider:
    """Static rate table keyed "FROM_TO"; the reciprocal pair is derived when missing."""

    def __init__(self, rates: Dict[str, float] | None = None):
        self.rates: Dict[str, float] = {k.upper(): float(v) for k, v in (rates or {}).items()}

    def get_rate(self, from_currency: str, to_currency: str) -> float:
        src, dst = from_currency.upper(), to_currency.upper()
        if src == dst:
            return 1.0

        direct = self.rates.get(f"{src}_{dst}")
        if direct is not None:
            return direct

        reverse = self.rates.get(f"{dst}_{src}")
        if reverse:
            return 1.0 / reverse

        raise ExchangeRateNotFound(src, dst)

    def set_rate(self, from_currency: str, to_currency: str, rate: float) -> None:
        self.rates[f"{from_currency.upper()}_{to_currency.upper()}"] = float(rate)
