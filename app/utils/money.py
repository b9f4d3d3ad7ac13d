"""
Open Bookkeeping Payroll - Money Helpers

Amounts are carried as integers in the currency's minor unit (sen for MYR).
Decimal is used only while applying rates, and the result is rounded once
(ROUND_HALF_UP) back to minor units. Display strings are produced and parsed
at the API boundary only.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from app.config import settings


MINOR_PER_MAJOR = 10 ** settings.payroll_currency_exponent
_QUANT = Decimal(1).scaleb(-settings.payroll_currency_exponent)  # Decimal("0.01")

AmountLike = Union[Decimal, str, int]


def round_half_up(minor_amount: Decimal) -> int:
    """Round a fractional minor-unit Decimal to a whole minor unit, half-up."""
    return int(minor_amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def round_to_minor(amount: Decimal) -> int:
    """Round a major-unit Decimal to integer minor units, half-up."""
    return round_half_up(amount * MINOR_PER_MAJOR)


def percent_of(minor_amount: int, rate_percent: Decimal) -> int:
    """Apply a percentage rate to a minor-unit amount, rounding once."""
    return round_half_up(Decimal(minor_amount) * rate_percent / 100)


def to_minor(value: AmountLike) -> int:
    """
    Parse a major-unit amount ("5000.00", Decimal("5000"), 5000) into minor units.

    Raises:
        ValueError: if the value is not a number or carries sub-minor precision.
    """
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    scaled = amount * MINOR_PER_MAJOR
    if scaled != scaled.to_integral_value():
        raise ValueError(
            f"Amount {value} has more than {settings.payroll_currency_exponent} decimal places"
        )
    return int(scaled)


def from_minor(minor: int) -> Decimal:
    """Minor units back to a quantized major-unit Decimal."""
    return (Decimal(minor) / MINOR_PER_MAJOR).quantize(_QUANT)


def format_minor(minor: int) -> str:
    """Minor units as a plain decimal string, e.g. 550000 -> "5500.00"."""
    return str(from_minor(minor))
