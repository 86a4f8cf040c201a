"""
Monetary Amounts Module

Decimal helpers for loan arithmetic. Intermediate values keep full
precision; amounts are rounded to the currency precision only when they
are persisted or rendered. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext, InvalidOperation
from enum import Enum
from typing import Any, Iterable

from .exceptions import DataError

# High precision for long installment histories
getcontext().prec = 28

ZERO = Decimal('0')
HUNDRED = Decimal('100')
CENT = Decimal('0.01')


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    DOP = ("DOP", 2)  # Dominican Peso, 2 decimal places
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def symbol(self) -> str:
        return {"DOP": "RD$", "USD": "US$", "EUR": "€"}[self.code]


def to_decimal(value: Any) -> Decimal:
    """Convert a stored or user-supplied value to Decimal without going through float"""
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise DataError(f"Invalid monetary amount: {value!r}")


def quantize(amount: Decimal, currency: Currency = Currency.DOP) -> Decimal:
    """Round to currency precision (persistence boundary only)"""
    return to_decimal(amount).quantize(
        Decimal('0.1') ** currency.precision,
        rounding=ROUND_HALF_UP
    )


def rate_fraction(percent: Any) -> Decimal:
    """Convert a percentage (5 for 5%) to a fraction"""
    return to_decimal(percent) / HUNDRED


def total(values: Iterable[Decimal]) -> Decimal:
    """Sum Decimals, starting from an exact zero"""
    return sum((to_decimal(v) for v in values), ZERO)


def within_tolerance(paid: Decimal, scheduled: Decimal, ratio: Decimal) -> bool:
    """
    Check whether a paid amount covers its scheduled amount, allowing a
    relative shortfall of `ratio` to absorb rounding.
    """
    if scheduled <= ZERO:
        return True
    return paid >= scheduled * (Decimal('1') - ratio)


def format_amount(amount: Decimal, currency: Currency = Currency.DOP) -> str:
    """Format for display"""
    return f"{currency.symbol}{quantize(amount, currency):,.{currency.precision}f}"
