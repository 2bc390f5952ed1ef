# importer/pricing/converter.py
# Vendor price -> store price: exchange rate, markup, then a rounding policy.
from __future__ import annotations

import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional

from importer.errors import NegativePriceError
from importer.pricing.rates import ExchangeRateProvider, FixedExchangeRateProvider

ROUNDING_POLICIES = ("none", "ceil", "99", "nearest5", "nearest10")

_CENT = Decimal("0.01")


def _round2(value: float | Decimal) -> float:
    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def apply_rounding(price: float, policy: str) -> float:
    if policy == "ceil":
        return float(math.ceil(price))
    if policy == "99":
        return _round2(math.floor(price) + 0.99)
    if policy == "nearest5":
        return float(math.ceil(price / 5) * 5)
    if policy == "nearest10":
        return float(math.ceil(price / 10) * 10)
    return price


class PricingConverter:
    def __init__(
        self,
        rate_provider: ExchangeRateProvider,
        source_currency: str = "EUR",
        target_currency: str = "RON",
        markup_percent: float = 0.0,
        rounding: str = "none",
    ):
        self.rate_provider = rate_provider
        self.source_currency = source_currency
        self.target_currency = target_currency
        self.markup_percent = float(markup_percent or 0.0)
        self.rounding = rounding if rounding in ROUNDING_POLICIES else "none"
        self._rate: Optional[float] = None

    def get_rate(self) -> float:
        if self._rate is None:
            self._rate = float(self.rate_provider.get_rate(self.source_currency, self.target_currency))
        return self._rate

    def clear_cache(self) -> None:
        self._rate = None

    def convert(self, price: float) -> float:
        price = float(price)
        if price < 0:
            raise NegativePriceError(price)
        if price == 0:
            return 0.0

        rate = Decimal(str(self.get_rate()))
        markup = Decimal(1) + Decimal(str(self.markup_percent)) / Decimal(100)
        converted = _round2(Decimal(str(price)) * rate * markup)
        return apply_rounding(converted, self.rounding)

    def convert_batch(self, prices: Iterable[float]) -> List[float]:
        return [self.convert(p) for p in prices]

    def format_price(self, price: float) -> str:
        return f"{float(price):.2f}"


def build_pricing_converter(profile_config) -> PricingConverter:
    """Converter for one run, honouring profile overrides for rate, markup and rounding."""
    source = profile_config.get_source_currency()
    target = profile_config.get_target_currency()
    provider = FixedExchangeRateProvider({f"{source}_{target}": profile_config.get_exchange_rate()})
    return PricingConverter(
        provider,
        source_currency=source,
        target_currency=target,
        markup_percent=profile_config.get_markup_percent(),
        rounding=profile_config.get_price_rounding(),
    )
