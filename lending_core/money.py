"""
Money Arithmetic Module

Fixed-point helpers for every monetary figure in the engine. Amounts are
Decimal rounded half-up to a fixed number of places after each computation.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Iterable, Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

MONEY_PLACES = 2
ZERO = Decimal('0')
CENT = Decimal('0.01')
EPSILON = Decimal('0.01')  # Residues at or below this amount are negligible

Number = Union[Decimal, int, str]


class RoundingMode(Enum):
    """Rounding modes for configurable charges"""
    NEAREST = "nearest"
    UP = "up"
    DOWN = "down"


_ROUNDING = {
    RoundingMode.NEAREST: ROUND_HALF_UP,
    RoundingMode.UP: ROUND_CEILING,
    RoundingMode.DOWN: ROUND_FLOOR,
}


def to_decimal(value: Number) -> Decimal:
    """
    Convert an int, str or Decimal to Decimal. Floats are rejected because
    their binary representation is already inexact.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"Monetary values must not be {type(value).__name__}")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        return decimal_from_string(value)
    raise TypeError(f"Cannot convert {type(value).__name__} to Decimal")


def round_money(value: Number, places: int = MONEY_PLACES) -> Decimal:
    """Round to the money precision using round-half-up"""
    return to_decimal(value).quantize(Decimal('0.1') ** places, rounding=ROUND_HALF_UP)


def round_by_mode(value: Number, mode: RoundingMode, places: int = MONEY_PLACES) -> Decimal:
    """Round using a configured rounding mode; places are clamped to 0..6"""
    places = max(0, min(6, places))
    return to_decimal(value).quantize(Decimal('0.1') ** places, rounding=_ROUNDING[mode])


def sum_money(values: Iterable[Decimal]) -> Decimal:
    """Sum already-rounded amounts and round the result"""
    total = ZERO
    for value in values:
        total += value
    return round_money(total)


def is_negligible(value: Decimal, epsilon: Decimal = EPSILON) -> bool:
    """Check whether an amount is within epsilon of zero"""
    return abs(value) <= epsilon


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - assume comma is thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:  # Likely decimal separator
            clean_value = clean_value.replace(',', '.')
        else:  # Likely thousands separator
            clean_value = clean_value.replace(',', '')
    elif clean_value.count(',') > 1:
        clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def format_money(value: Decimal) -> str:
    """Format for display and log messages"""
    return f"{round_money(value):,.2f}"
