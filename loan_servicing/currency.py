"""
Currency Precision Module

ISO 4217 currency codes with minor-unit precision and the rounding helpers
used by every monetary calculation. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Union

from .exceptions import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal('0')


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    UGX = ("UGX", 0)  # Ugandan Shilling, no minor unit in practice
    KES = ("KES", 2)  # Kenyan Shilling
    TZS = ("TZS", 2)  # Tanzanian Shilling
    RWF = ("RWF", 0)  # Rwandan Franc
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def unit(self) -> Decimal:
        """Smallest representable amount"""
        return Decimal('0.1') ** self.precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValidationError(f"Unsupported currency: {code}")


def to_decimal(value: Union[Decimal, int, str, None]) -> Decimal:
    """
    Convert a stored or submitted amount to Decimal.

    Floats are rejected: money must arrive as Decimal, int or string.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise ValidationError("Monetary values must not be floats")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Cannot convert '{value}' to Decimal")


def quantize(value: Decimal, currency: Currency) -> Decimal:
    """Round to currency precision"""
    return value.quantize(currency.unit, rounding=ROUND_HALF_UP)


def quantize_score(value: Decimal) -> Decimal:
    """Scores and percentages carry two decimals regardless of currency"""
    return value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
