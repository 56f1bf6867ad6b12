"""
Money helpers for order totals and payment amounts.

- Decimal arithmetic for comparisons (floats go through str first)
- Fixed 0.01 tolerance when matching amounts
- Conversion to and from gateway minor units (pesewas/kobo)
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union
import logging

logger = logging.getLogger(__name__)

DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
AMOUNT_TOLERANCE = Decimal('0.01')
MINOR_UNITS_PER_MAJOR = 100

Number = Union[float, int, str, Decimal]


class MoneyError(Exception):
    """Raised when a monetary value cannot be interpreted"""
    pass


def to_decimal(value: Number) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for comparisons.
    """
    if isinstance(value, bool):
        raise MoneyError("Cannot convert bool to Decimal")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        # Via str to avoid binary float artefacts
        return Decimal(str(value))
    if isinstance(value, str):
        return Decimal(value)
    raise MoneyError(f"Cannot convert {type(value)} to Decimal")


def round_money(value: Number) -> Decimal:
    """Round to 2 decimal places, half-up"""
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Number) -> float:
    """Rounded float for MongoDB storage"""
    return float(round_money(value))


def amounts_match(a: Number, b: Number, tolerance: Decimal = AMOUNT_TOLERANCE) -> bool:
    """True when |a - b| <= tolerance"""
    return abs(to_decimal(a) - to_decimal(b)) <= tolerance


def totals_consistent(refill_amount: Number, delivery_fee: Number, total_amount: Number) -> bool:
    """Order total must equal refill + delivery fee within tolerance"""
    return amounts_match(to_decimal(refill_amount) + to_decimal(delivery_fee), total_amount)


def to_minor_units(amount: Number) -> int:
    """25.50 -> 2550"""
    return int(round_money(amount) * MINOR_UNITS_PER_MAJOR)


def from_minor_units(amount: Number) -> Decimal:
    """2550 -> Decimal('25.50')"""
    return round_money(to_decimal(amount) / MINOR_UNITS_PER_MAJOR)
