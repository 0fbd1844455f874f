"""
Commission calculation and currency-correct rounding.

Every money amount in the package is rounded through ``round_money`` so
commission, refunds, contract totals and fee estimates agree to the minor
unit.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from pydantic import BaseModel, ConfigDict

from payment_orchestration.core.exceptions import CommissionError

# ISO 4217 minor units that differ from 2
_MINOR_UNITS = {
    "JPY": 0,
    "KRW": 0,
    "BHD": 3,
    "KWD": 3,
    "JOD": 3,
    "OMR": 3,
    "TND": 3,
}

Number = Union[Decimal, int, str]


def minor_units(currency: str) -> int:
    """Number of decimal places used by ``currency``."""
    return _MINOR_UNITS.get(currency.upper(), 2)


def to_decimal(value: Number) -> Decimal:
    """Convert an int, str or Decimal to Decimal, rejecting floats."""
    if isinstance(value, float):
        raise CommissionError("Money amounts must not be floats")
    try:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as e:
        raise CommissionError(f"Invalid amount: {value!r}") from e


def round_money(amount: Number, currency: str) -> Decimal:
    """
    Round an amount to the currency's minor unit, half away from zero.

    Args:
        amount: Amount to round
        currency: ISO 4217 currency code

    Returns:
        Decimal: Rounded amount, e.g. ``Decimal("5.00")`` for EUR
    """
    exponent = Decimal(1).scaleb(-minor_units(currency))
    return to_decimal(amount).quantize(exponent, rounding=ROUND_HALF_UP)


class CommissionBreakdown(BaseModel):
    """Platform fee split of a gross amount."""

    model_config = ConfigDict(frozen=True)

    commission_rate: Decimal
    commission_amount: Decimal
    net_amount: Decimal


def calculate_commission(amount: Number, rate: Number, currency: str) -> CommissionBreakdown:
    """
    Compute platform commission and net payout.

    ``commission_amount`` is ``amount * rate`` rounded to the currency's minor
    unit and ``net_amount`` is the remainder, so the two always add back up to
    the rounded gross amount.

    Args:
        amount: Gross amount, must be >= 0
        rate: Commission rate between 0 and 1
        currency: ISO 4217 currency code

    Returns:
        CommissionBreakdown: rate, commission and net amount

    Raises:
        CommissionError: If amount is negative or rate is out of range
    """
    gross = round_money(amount, currency)
    commission_rate = to_decimal(rate)

    if gross < 0:
        raise CommissionError("Amount must not be negative")
    if commission_rate < 0 or commission_rate > 1:
        raise CommissionError("Commission rate must be between 0 and 1")

    commission_amount = round_money(gross * commission_rate, currency)
    return CommissionBreakdown(
        commission_rate=commission_rate,
        commission_amount=commission_amount,
        net_amount=gross - commission_amount,
    )
