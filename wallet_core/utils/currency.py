"""Currency parsing and formatting utilities."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from ..exceptions import InvalidAmount

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, float, str]


def quantize(value: Number) -> Decimal:
    """Round a numeric value to whole cents (half up)."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value: object, *, allow_zero: bool = False) -> Decimal:
    """
    Convert user or host input into a positive Decimal amount.

    Args:
        value: Decimal, int, float or numeric string
        allow_zero: Accept 0 as a valid amount

    Returns:
        Amount rounded to cents

    Raises:
        InvalidAmount: if the value is not numeric, not finite, or not positive
    """
    if isinstance(value, bool) or value is None:
        raise InvalidAmount(value)
    try:
        amount = quantize(value)  # type: ignore[arg-type]
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise InvalidAmount(value) from exc
    if not amount.is_finite():
        raise InvalidAmount(value)
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmount(value)
    return amount


def to_cents(amount: Decimal) -> int:
    return int(quantize(amount) * 100)


def from_cents(cents: int | None) -> Decimal:
    return (Decimal(cents or 0) / 100).quantize(CENT)


def to_decimal(value: float | int | str | None) -> Decimal:
    """Convert a stored REAL (percent or coupon value) to Decimal without float noise."""
    if value is None:
        return Decimal(0)
    return Decimal(str(value))


def format_amount(amount: Decimal, currency: str = "USD") -> str:
    """
    Format an amount for display.

    Args:
        amount: Decimal amount (e.g., Decimal("19.99"))
        currency: ISO currency code

    Returns:
        Formatted string (e.g., "19.99 USD")
    """
    return f"{quantize(amount):,.2f} {currency}"
