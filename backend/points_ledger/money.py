"""
Fixed-point helpers for points.

Points carry 3 decimals and are truncated, never rounded, whenever a
product or quotient is converted to points. Stored values are integer
thousandths so balance changes can be applied with a single $inc.
"""

from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Union

from .config import POINTS_SCALE, POINTS_PER_1000_CHARS

Number = Union[int, float, str, Decimal]

_QUANTUM = Decimal("0.001")


def to_decimal(value: Number) -> Decimal:
    """Convert a number to Decimal without binary float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("booleans are not amounts")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Not a number: {value!r}") from e


def truncate_points(value: Number) -> Decimal:
    """Truncate to 3 decimals (toward zero)."""
    return to_decimal(value).quantize(_QUANTUM, rounding=ROUND_DOWN)


def to_milli(value: Number) -> int:
    """Points -> stored integer thousandths (truncating)."""
    return int(truncate_points(value) * POINTS_SCALE)


def from_milli(milli: int) -> Decimal:
    """Stored integer thousandths -> points."""
    return (Decimal(int(milli or 0)) / POINTS_SCALE).quantize(_QUANTUM)


def milli_to_float(milli: int) -> float:
    """Stored integer thousandths -> float for JSON payloads."""
    return float(from_milli(milli))


def points_for_payment(amount: Number, rate: Number) -> Decimal:
    """Points granted for a payment: amount * rate, truncated."""
    return truncate_points(to_decimal(amount) * to_decimal(rate))


def task_cost(text_length: int, points_per_thousand: Number = POINTS_PER_1000_CHARS) -> Decimal:
    """Cost of a rewriting task: text_length / 1000 * rate, truncated."""
    return truncate_points(Decimal(text_length) / Decimal(1000) * to_decimal(points_per_thousand))


def rate_difference(payer_rate: Number, beneficiary_rate: Number) -> Decimal:
    return (to_decimal(payer_rate) - to_decimal(beneficiary_rate)).quantize(_QUANTUM)
