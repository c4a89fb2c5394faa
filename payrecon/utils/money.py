"""Conversion between gateway minor units and decimal major units."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP", "ISK", "UGX"})
THREE_DECIMAL_CURRENCIES = frozenset({"BHD", "JOD", "KWD", "OMR", "TND"})


def decimal_places(currency: str | None) -> int:
    """Number of minor-unit digits for ``currency``; unknown codes use two."""

    code = (currency or "").strip().upper()
    if code in ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def _quantum(places: int) -> Decimal:
    return Decimal(1).scaleb(-places)


def to_minor_units(amount: Any, currency: str | None) -> int:
    places = decimal_places(currency)
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    quantized = value.quantize(_quantum(places), rounding=ROUND_HALF_UP)
    return int(quantized.scaleb(places).to_integral_value(rounding=ROUND_HALF_UP))


def to_major_units(amount: int, currency: str | None) -> Decimal:
    places = decimal_places(currency)
    return Decimal(int(amount)).scaleb(-places).quantize(_quantum(places))
