"""Integer-cents money helpers.

All checkout and refund arithmetic happens on ``int`` cents. Decimal input
(catalog prices, legacy fee fields) is converted once at the edge with
``to_cents``; everything downstream goes through the checked helpers so a
value outside the safe integer range fails loudly instead of drifting.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from src.core.errors import ArithmeticOverflow, InvalidAmount

# Largest integer every consumer of our payloads (JSON clients, Stripe) can
# represent exactly.
MAX_SAFE_CENTS = 2**53 - 1

CENTS_PER_UNIT = 100
_ONE_CENT = Decimal("0.01")


def ensure_safe_cents(value: int) -> int:
    """Return ``value`` unchanged, or raise if it is outside the safe range."""
    if abs(value) > MAX_SAFE_CENTS:
        raise ArithmeticOverflow(value)
    return value


def _to_decimal(amount: Any) -> Decimal:
    if isinstance(amount, bool):
        raise InvalidAmount(amount, "booleans are not amounts")
    if isinstance(amount, Decimal):
        value = amount
    elif isinstance(amount, int):
        value = Decimal(amount)
    elif isinstance(amount, float):
        # repr() keeps 19.99 as 19.99 instead of its binary expansion
        value = Decimal(repr(amount))
    elif isinstance(amount, str):
        try:
            value = Decimal(amount.strip())
        except InvalidOperation as e:
            raise InvalidAmount(amount, "not a number") from e
    else:
        raise InvalidAmount(amount, "unsupported type")

    if not value.is_finite():
        raise InvalidAmount(amount)
    return value


def to_cents(amount: Any, allow_negative: bool = False) -> int:
    """Convert a decimal currency amount (e.g. ``"12.345"``) to integer cents.

    Rounds to the nearest cent, halves away from zero.

    Raises:
        InvalidAmount: If the amount is non-finite, unparseable, or negative
            while ``allow_negative`` is False.
        ArithmeticOverflow: If the result is outside the safe integer range.
    """
    value = _to_decimal(amount)
    if value < 0 and not allow_negative:
        raise InvalidAmount(amount, "negative amounts are not allowed")
    cents = int((value * CENTS_PER_UNIT).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return ensure_safe_cents(cents)


def cents_to_decimal(cents: int) -> Decimal:
    """Convert integer cents back to a currency amount (1234 -> Decimal('12.34'))."""
    return (Decimal(cents) / CENTS_PER_UNIT).quantize(_ONE_CENT)


def add_cents(*values: int) -> int:
    """Sum cent values with an overflow check on the result."""
    return ensure_safe_cents(sum(values))


def multiply_cents(cents: int, factor: int) -> int:
    """Multiply cents by an integer factor (usually a quantity)."""
    return ensure_safe_cents(cents * factor)


def round_half_up_div(numerator: int, denominator: int) -> int:
    """Integer division rounded to nearest, halves away from zero."""
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    sign = -1 if numerator < 0 else 1
    quotient, remainder = divmod(abs(numerator), denominator)
    if remainder * 2 >= denominator:
        quotient += 1
    return sign * quotient


def prorate_cents(total_cents: int, part: int, whole: int) -> int:
    """Return ``round(total_cents * part / whole)`` computed exactly.

    Used to allocate a line total across a subset of its units, e.g. 1 of 2
    units of a 1000-cent line is 500 cents.
    """
    return ensure_safe_cents(round_half_up_div(multiply_cents(total_cents, part), whole))


def percentage_of(cents: int, percentage: Decimal) -> int:
    """Return ``round(cents * percentage / 100)``, clamped to zero."""
    raw = (Decimal(cents) * Decimal(percentage) / CENTS_PER_UNIT).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return ensure_safe_cents(max(0, int(raw)))


def coerce_int_cents(value: Any, allow_negative: bool = False) -> int:
    """Leniently read a cents value from loosely-typed stored data.

    Historical rows may hold strings, floats or nulls. Fractions truncate
    toward zero, anything unreadable becomes 0, and negatives clamp to 0
    unless ``allow_negative`` is set.
    """
    if value is None or isinstance(value, bool):
        return 0
    try:
        numeric = _to_decimal(value)
    except InvalidAmount:
        return 0
    cents = int(numeric)
    if not allow_negative:
        cents = max(0, cents)
    return ensure_safe_cents(cents)
