"""
Currency Support Module

Handles the two operating currencies and 2-decimal rounding for every derived
monetary field. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Any

# Set global decimal context for financial precision
getcontext().prec = 28  # High precision for financial calculations

ZERO = Decimal('0')
CENT = Decimal('0.01')


class Currency(Enum):
    """ISO 4217 Currency Codes"""
    USD = "USD"  # US Dollar
    LRD = "LRD"  # Liberian Dollar

    @property
    def code(self) -> str:
        return self.value

    @classmethod
    def from_code(cls, code: Any) -> 'Currency':
        """Resolve a currency from its code (case-insensitive) or pass through an instance"""
        if isinstance(code, Currency):
            return code
        try:
            return cls[str(code).strip().upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency '{code}'")


def to_decimal(value: Any) -> Decimal:
    """
    Coerce a number, numeric string or None to a finite Decimal.

    None, empty strings and non-finite values (NaN, Infinity) become zero.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        result = Decimal(int(value))
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    else:
        text = str(value).strip()
        if not text:
            return ZERO
        try:
            result = Decimal(text)
        except InvalidOperation:
            raise ValueError(f"Cannot convert '{value}' to Decimal")

    if not result.is_finite():
        return ZERO
    return result


def optional_decimal(value: Any):
    """Like to_decimal but keeps None (and empty strings) as None"""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return to_decimal(value)


def round2(value: Any) -> Decimal:
    """Round to 2 decimal places, half-up; non-finite input becomes 0.00"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
