"""
Precision constants and helpers for AutoFlow.

All balances are USD-pegged stablecoin amounts held as ``Decimal`` and
quantized to cents:

    1 USDC = 100 cents (smallest unit the simulation books)

Gas figures on receipts are native-token amounts and are *not* quantized
here; see :mod:`autoflow_core.receipt`.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

# Number of decimal places for every booked amount.
MONEY_DECIMALS: int = 2

CENT: Decimal = Decimal(1).scaleb(-MONEY_DECIMALS)  # Decimal("0.01")

ZERO: Decimal = Decimal("0.00")

DEFAULT_CURRENCY: str = "USDC"


def quantize(value: Decimal | int | str) -> Decimal:
    """Round *value* to cents using half-up rounding.

    >>> quantize(Decimal("0.112438"))
    Decimal('0.11')
    >>> quantize("1.005")
    Decimal('1.01')
    """
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value: Any) -> Decimal | None:
    """
    Convert user input into a cent-quantized ``Decimal``.

    Returns ``None`` for anything that is not a finite number.  Floats go
    through ``str()`` so ``0.1`` becomes ``Decimal("0.10")`` rather than
    its binary expansion.  Sign is preserved; callers decide whether a
    non-positive amount is acceptable.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        value = str(value)
    try:
        dec = Decimal(value) if not isinstance(value, Decimal) else value
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not dec.is_finite():
        return None
    return quantize(dec)


def is_positive_amount(value: Decimal | None) -> bool:
    return value is not None and value > ZERO


def display_amount(value: Decimal, floor: Decimal = ZERO) -> Decimal:
    """Presentation rule: never show a balance below *floor*."""
    return max(quantize(value), quantize(floor))


def format_amount(value: Decimal, currency: str = DEFAULT_CURRENCY) -> str:
    """Return ``"12.50 USDC"``-style text."""
    return f"{quantize(value):.{MONEY_DECIMALS}f} {currency}"


def format_signed(value: Decimal) -> str:
    """Return ``"+ $12.50"`` / ``"- $3.50"`` as shown in the activity feed."""
    sign = "-" if value < 0 else "+"
    return f"{sign} ${abs(quantize(value)):.{MONEY_DECIMALS}f}"
