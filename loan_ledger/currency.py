"""
Currency Precision Module

Currency codes are free-form (loans default to MYR). This module knows how
many minor-unit digits a code carries and rounds Decimal amounts to it.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Dict, Optional, Union

# Set global decimal context for financial precision
getcontext().prec = 28

DEFAULT_PRECISION = 2

# ISO 4217 exponents that differ from the default of 2
CURRENCY_PRECISION: Dict[str, int] = {
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "IDR": 0,
    "CLP": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
    "JOD": 3,
    "TND": 3,
}

Number = Union[Decimal, int, float, str]


def currency_precision(code: Optional[str], overrides: Optional[Dict[str, int]] = None) -> int:
    """Number of minor-unit digits for a currency code"""
    code = (code or "").upper()
    if overrides and code in overrides:
        return overrides[code]
    return CURRENCY_PRECISION.get(code, DEFAULT_PRECISION)


def minor_unit(code: Optional[str], overrides: Optional[Dict[str, int]] = None) -> Decimal:
    """Smallest representable amount, e.g. Decimal('0.01') for MYR"""
    return Decimal('0.1') ** currency_precision(code, overrides)


def quantize(amount: Decimal, code: Optional[str],
             overrides: Optional[Dict[str, int]] = None) -> Decimal:
    """
    Round an amount to the currency's minor unit (half-up)

    Args:
        amount: Decimal amount
        code: Currency code
        overrides: Optional per-code precision overrides

    Returns:
        Rounded Decimal
    """
    return amount.quantize(minor_unit(code, overrides), rounding=ROUND_HALF_UP)


def to_decimal(value: Number, field_name: str = "amount") -> Decimal:
    """
    Convert an incoming number to Decimal.

    Floats go through str() so 0.1 becomes Decimal('0.1') rather than its
    binary expansion.

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"{field_name} must be a number")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"{field_name} must be a number, got {value!r}")
    if not result.is_finite():
        raise ValueError(f"{field_name} must be finite")
    return result


def format_amount(amount: Decimal, code: str, overrides: Optional[Dict[str, int]] = None) -> str:
    """Format for display, e.g. 'MYR 1,100.00'"""
    precision = currency_precision(code, overrides)
    return f"{code} {amount:,.{precision}f}"
