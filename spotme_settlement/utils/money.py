"""Money conversion helpers (decimal major units <-> integer cents)"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Coerce to a two-place Decimal; floats go through str to avoid binary noise"""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Number) -> int:
    """Major units to integer minor units, e.g. Decimal('25.10') -> 2510"""
    return int((to_decimal(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    """Integer minor units back to a two-place Decimal"""
    return (Decimal(cents) / 100).quantize(CENT)
