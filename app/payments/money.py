"""
Decimal money helpers.

Amounts are Decimal end to end. Each currency has a precision (USD 2, TZS 0,
JPY 0) and every stored or computed amount is quantized to it with
ROUND_HALF_UP.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0")


def to_decimal(value) -> Decimal:
    """Coerce int/str/Decimal to Decimal without going through float."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def quantize(amount, decimals: int) -> Decimal:
    """Round an amount half-up to the given number of decimal places."""
    exponent = Decimal(1).scaleb(-decimals)
    return to_decimal(amount).quantize(exponent, rounding=ROUND_HALF_UP)


def to_minor_units(amount, decimals: int) -> int:
    """Convert a major-unit amount to an integer of minor units (cents)."""
    return int(quantize(amount, decimals).scaleb(decimals))


def from_minor_units(minor: int, decimals: int) -> Decimal:
    """Convert integer minor units back to a quantized major-unit Decimal."""
    return quantize(Decimal(minor).scaleb(-decimals), decimals)
