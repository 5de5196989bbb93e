"""Fixed-point helpers shared by the fee engine and detectors.

All prices, sizes and money values flow through :class:`decimal.Decimal`.
Floats only appear for venue-reported implied vols and ``edge_bps``.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, localcontext
from typing import Any

ZERO = Decimal("0")
ONE = Decimal("1")
TWO = Decimal("2")

# Floor applied to fees when computing the edge/fee ratio.
FEE_RATIO_FLOOR = Decimal("0.01")
# Slack allowed when comparing a vertical's debit to its max payout.
PAYOUT_TOLERANCE = Decimal("0.000001")

_PRECISION = 34


def to_decimal(value: Any, default: Decimal | None = None) -> Decimal:
    """Coerce venue/CLI values to Decimal.

    Floats are routed through ``repr`` so ``0.1`` becomes ``Decimal("0.1")``
    rather than its binary expansion.
    """
    if isinstance(value, Decimal):
        return value
    if value is None:
        if default is None:
            raise ValueError("cannot convert None to Decimal")
        return default
    if isinstance(value, bool):
        raise ValueError(f"cannot convert bool to Decimal: {value!r}")
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        if default is None:
            raise ValueError(f"invalid decimal value: {value!r}") from None
        return default
    if not result.is_finite():
        if default is None:
            raise ValueError(f"non-finite decimal value: {value!r}")
        return default
    return result


def safe_div(numerator: Decimal, denominator: Decimal) -> Decimal:
    """Divide, returning zero when the denominator is zero."""
    if denominator.is_zero():
        return ZERO
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return numerator / denominator


def to_float(value: Decimal) -> float:
    try:
        return float(value)
    except (OverflowError, ValueError):
        return 0.0


def normalize(value: Decimal) -> str:
    """Render without exponent or trailing zeros (``5000.00`` -> ``5000``)."""
    if value.is_zero():
        return "0"
    text = format(value.normalize(), "f")
    return text


def format_money(value: Decimal) -> str:
    if abs(value) < FEE_RATIO_FLOOR:
        return f"{value:.4f}"
    return f"{value:.2f}"
