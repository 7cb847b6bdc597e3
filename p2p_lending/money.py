"""
Money Module

Decimal helpers for loan amounts. NEVER uses float for monetary values:
every amount is a Decimal rounded half-up to the currency's minor unit.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_CEILING, ROUND_DOWN, getcontext, InvalidOperation
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal("0.01")
ZERO = Decimal("0")


class Currency(Enum):
    """ISO 4217 currency codes supported for loans, with precision info"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    CAD = ("CAD", 2)
    KES = ("KES", 2)  # Kenyan Shilling
    NGN = ("NGN", 2)  # Nigerian Naira
    
    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision
    
    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        for currency in cls:
            if currency.code == code.upper():
                return currency
        raise ValueError(f"Unsupported currency: {code}")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency
    
    def __post_init__(self):
        object.__setattr__(self, 'amount', round_money(self.amount, self.currency.precision))

    def to_string(self) -> str:
        """Format for display in notification messages"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def to_decimal(value: Any) -> Decimal:
    """
    Convert a stored or user-supplied value to Decimal.
    
    Floats go through str() so 0.1 becomes Decimal('0.1'), not its binary
    expansion.
    
    Raises:
        ValueError: If the value is not numeric
    """
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Cannot convert {value!r} to Decimal")


def round_money(value: Union[Decimal, int, str], precision: int = 2) -> Decimal:
    """Round half-up to the given number of decimal places"""
    return to_decimal(value).quantize(Decimal('0.1') ** precision, rounding=ROUND_HALF_UP)


def round_up_money(value: Union[Decimal, int, str], precision: int = 2) -> Decimal:
    """Round toward positive infinity (amounts a borrower still has to pay)"""
    return to_decimal(value).quantize(Decimal('0.1') ** precision, rounding=ROUND_CEILING)


def round_down_money(value: Union[Decimal, int, str], precision: int = 2) -> Decimal:
    """Truncate toward zero (per-installment shares; the last installment takes the rest)"""
    return to_decimal(value).quantize(Decimal('0.1') ** precision, rounding=ROUND_DOWN)


def format_amount(value: Decimal, currency_code: str = "USD") -> str:
    """Format a bare Decimal amount with its currency code"""
    return Money(to_decimal(value), Currency.from_code(currency_code)).to_string()
