from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Coerce ints, floats, strings or Decimals to a cent-quantized Decimal."""
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def floor_money(value: Decimal) -> Decimal:
    # shares are truncated so a split never pays out more than it was given
    return value.quantize(CENT, rounding=ROUND_DOWN)


def is_whole_cents(value: Decimal) -> bool:
    return value == value.quantize(CENT)


def to_score(value: Any) -> Decimal:
    """Exact Decimal of a fantasy score; scores are compared unrounded."""
    if value is None:
        return Decimal("0")
    return Decimal(str(value))
