"""
Fixed-point helpers for currency, price and percentage values
All engine arithmetic is done on Decimal, never on float
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, ROUND_FLOOR
from typing import Any, Optional

from .exceptions import InvalidPositionState

ZERO = Decimal('0')
HUNDRED = Decimal('100')

CENT = Decimal('0.01')
PRICE_STEP = Decimal('0.0001')
PCT_STEP = Decimal('0.01')


def to_decimal(value: Any, field: str = 'value', allow_negative: bool = False,
               allow_zero: bool = True) -> Decimal:
    """
    Convert a numeric input to Decimal and validate it

    Floats go through str() so 0.1 becomes Decimal('0.1') and not its binary expansion.

    Raises:
        InvalidPositionState: for None, NaN, infinities, negatives (unless allowed)
            and zero (when not allowed)
    """
    if value is None:
        raise InvalidPositionState(f"{field} is required")
    if isinstance(value, bool):
        raise InvalidPositionState(f"{field} must be numeric, got bool")
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidPositionState(f"{field} is not a number: {value!r}")

    if not number.is_finite():
        raise InvalidPositionState(f"{field} must be finite, got {value!r}")
    if not allow_negative and number < 0:
        raise InvalidPositionState(f"{field} must not be negative, got {number}")
    if not allow_zero and number == 0:
        raise InvalidPositionState(f"{field} must be positive, got {number}")
    return number


def optional_decimal(value: Any, field: str = 'value') -> Optional[Decimal]:
    """Like to_decimal but passes None through"""
    if value is None:
        return None
    return to_decimal(value, field)


def money(value: Decimal) -> Decimal:
    """Quantize to currency precision (0.01, half-up)"""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def price(value: Decimal) -> Decimal:
    return Decimal(value).quantize(PRICE_STEP, rounding=ROUND_HALF_UP)


def pct(value: Decimal) -> Decimal:
    return Decimal(value).quantize(PCT_STEP, rounding=ROUND_HALF_UP)


def floor_int(value: Decimal) -> int:
    """Round toward negative infinity and return an int"""
    return int(Decimal(value).to_integral_value(rounding=ROUND_FLOOR))


def percent_of(amount: Decimal, percentage: Decimal) -> Decimal:
    return money(Decimal(amount) * Decimal(percentage) / HUNDRED)
