"""Per-item shipping amounts for checkout."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping

from src.core.errors import InvalidAmount, MixedShippingModeError
from src.core.money import add_cents, coerce_int_cents, multiply_cents, to_cents

logger = logging.getLogger(__name__)


class ShippingMode(str, Enum):
    """How a product's shipping is charged."""

    FREE = "free"
    FLAT = "flat"
    CALCULATED = "calculated"


@dataclass(frozen=True)
class ShippingDescriptor:
    """Normalized shipping configuration of one product.

    ``per_unit_cents`` is only meaningful for ``FLAT``.
    """

    mode: ShippingMode
    per_unit_cents: int = 0

    @property
    def is_calculated(self) -> bool:
        """Calculated shipping is resolved by Stripe at checkout, not locally."""
        return self.mode is ShippingMode.CALCULATED


@dataclass(frozen=True)
class CartShipping:
    """Shipping summed across a cart."""

    shipping_cents: int
    has_calculated: bool


def _has_value(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return isinstance(value, (int, float, Decimal))


def normalize_shipping(product: Mapping[str, Any]) -> ShippingDescriptor:
    """Build a ``ShippingDescriptor`` from a catalog product row.

    The per-unit amount prefers explicit cents fields
    (``shipping_fee_cents_per_unit``, then ``shipping_flat_fee_cents``) over
    the legacy decimal ``shipping_flat_fee``, which is converted and rounded.
    A row without a recognized mode but with any fee field is treated as
    flat; otherwise shipping is free.
    """
    raw_mode = product.get("shipping_mode")
    per_unit_raw = product.get("shipping_fee_cents_per_unit")
    flat_cents_raw = product.get("shipping_flat_fee_cents")
    flat_decimal_raw = product.get("shipping_flat_fee")

    per_unit_cents = 0
    if _has_value(per_unit_raw):
        per_unit_cents = coerce_int_cents(per_unit_raw)
    elif _has_value(flat_cents_raw):
        per_unit_cents = coerce_int_cents(flat_cents_raw)
    elif _has_value(flat_decimal_raw):
        try:
            per_unit_cents = to_cents(flat_decimal_raw, allow_negative=True)
        except InvalidAmount:
            logger.warning(
                "Ignoring unreadable shipping_flat_fee %r on product %s",
                flat_decimal_raw,
                product.get("id"),
            )
            per_unit_cents = 0

    has_legacy_fee = any(_has_value(v) for v in (per_unit_raw, flat_cents_raw, flat_decimal_raw))

    try:
        mode = ShippingMode(raw_mode)
    except ValueError:
        mode = ShippingMode.FLAT if has_legacy_fee else ShippingMode.FREE

    if mode is not ShippingMode.FLAT:
        return ShippingDescriptor(mode=mode)
    return ShippingDescriptor(mode=mode, per_unit_cents=max(0, per_unit_cents))


def unit_shipping_cents(descriptor: ShippingDescriptor) -> int:
    """Shipping for a single unit; the caller multiplies by quantity.

    Free and calculated modes contribute nothing locally.
    """
    if descriptor.mode is ShippingMode.FLAT:
        return max(0, descriptor.per_unit_cents)
    return 0


def line_shipping_cents(descriptor: ShippingDescriptor, quantity: int) -> int:
    """Shipping for ``quantity`` units of one product."""
    return multiply_cents(unit_shipping_cents(descriptor), quantity)


def compute_cart_shipping(lines: Iterable[tuple[ShippingDescriptor, int]]) -> CartShipping:
    """Sum shipping over ``(descriptor, quantity)`` pairs.

    Raises:
        MixedShippingModeError: If any product uses calculated shipping while
            the flat shipping total is non-zero. Stripe cannot combine a fixed
            shipping option with calculated rates on one session.
    """
    shipping_cents = 0
    has_calculated = False
    for descriptor, quantity in lines:
        if descriptor.is_calculated:
            has_calculated = True
        shipping_cents = add_cents(shipping_cents, line_shipping_cents(descriptor, quantity))

    if has_calculated and shipping_cents > 0:
        raise MixedShippingModeError(shipping_cents)

    return CartShipping(shipping_cents=shipping_cents, has_calculated=has_calculated)
