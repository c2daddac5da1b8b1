"""
Money Helpers Module

Single-currency amount handling with proper Decimal precision.
NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union

from .errors import InvalidAmount

# Set global decimal context for financial precision
getcontext().prec = 28

PRECISION = 2
_QUANT = Decimal('0.1') ** PRECISION
ZERO = Decimal('0.00')

AmountLike = Union[Decimal, str, int]


def to_amount(value: AmountLike) -> Decimal:
    """
    Convert a user supplied value into a validated amount

    Floats are rejected outright; strings and ints go through Decimal.
    Amounts with more than two decimal places are refused rather than
    silently rounded.

    Raises:
        InvalidAmount: If the value is not a finite number with at most
            two decimal places
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmount("Amounts must be given as Decimal or string, not float")

    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Cannot convert '{value}' to an amount")

    if not amount.is_finite():
        raise InvalidAmount("Amount must be a finite number")

    try:
        quantized = quantize(amount)
    except InvalidOperation:
        # More digits than the decimal context can hold
        raise InvalidAmount(f"Amount {amount} is out of range")

    if amount != quantized:
        raise InvalidAmount(f"Amount {amount} has more than {PRECISION} decimal places")

    return quantized


def quantize(amount: Decimal) -> Decimal:
    """Round to currency precision"""
    return amount.quantize(_QUANT, rounding=ROUND_HALF_UP)


def parse_stored(value: str) -> Decimal:
    """Parse an amount previously written by this package"""
    return quantize(Decimal(value))

