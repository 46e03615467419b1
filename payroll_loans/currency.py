"""
Currency Precision Module

All monetary values are Decimal, rounded half-up to currency precision only
when a value is persisted. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

# Set global decimal context for financial precision
getcontext().prec = 28

CURRENCY_PRECISION = 2
CENT = Decimal('0.1') ** CURRENCY_PRECISION
ZERO = Decimal('0.00')

Amount = Union[Decimal, int, str]


def to_decimal(value: Amount) -> Decimal:
    """
    Convert an incoming amount to Decimal.

    Floats go through str() so 0.1 stays 0.1; anything unparsable raises
    ValueError. Infinity and NaN are rejected.
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a monetary amount: {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"Not a monetary amount: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Not a monetary amount: {value!r}")
    return result


def round_currency(value: Decimal) -> Decimal:
    """Round to currency precision using round-half-up"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def has_currency_precision(value: Decimal) -> bool:
    """True when the value carries no digits below the smallest currency unit"""
    return value == value.quantize(CENT, rounding=ROUND_HALF_UP)
