"""Money conversion helpers using integer minor units (cents)."""

from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation, ROUND_FLOOR, ROUND_HALF_UP


MINOR_PER_MAJOR = 100
_MINOR_QUANT = Decimal("0.01")


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    """Parse a money-ish value without going through binary floats."""
    try:
        dec = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    if not dec.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return dec


def price_to_minor(value: Decimal | float | int | str) -> int:
    """Convert a catalog price to minor units, rounding half up."""
    dec = to_decimal(value).quantize(_MINOR_QUANT, rounding=ROUND_HALF_UP)
    return int(dec * MINOR_PER_MAJOR)


def received_to_minor(value: Decimal | float | int | str) -> int:
    """Convert a confirmed received amount to minor units, rounding down (conservative)."""
    dec = to_decimal(value).quantize(_MINOR_QUANT, rounding=ROUND_FLOOR)
    return int(dec * MINOR_PER_MAJOR)


def minor_to_decimal(value: int) -> Decimal:
    """Convert integer minor units to a Decimal major amount."""
    return (Decimal(value) / Decimal(MINOR_PER_MAJOR)).quantize(_MINOR_QUANT)


def minor_to_float(value: int) -> float:
    """Convert integer minor units to float (for display APIs)."""
    return float(minor_to_decimal(value))


def format_minor(value: int, currency: str = "USD") -> str:
    """Format integer minor units as a currency string."""
    if currency == "USD":
        return f"${minor_to_decimal(value):.2f}"
    return f"{minor_to_decimal(value):.2f} {currency}"


def local_amount_for(total_minor: int, rate: Decimal | float | str) -> int:
    """Local-currency whole units needed to fund `total_minor`, rounded up."""
    dec_rate = to_decimal(rate)
    if dec_rate <= 0:
        raise ValueError(f"Invalid exchange rate: {rate}")
    return math.ceil(minor_to_decimal(total_minor) * dec_rate)
