"""Checkout total computation.

Turns a cart (product id -> quantity) plus authoritative catalog rows into
item subtotal, shipping and platform fee, all in integer cents. Client-side
prices are never trusted: every amount here comes from the catalog.

The resulting ``CheckoutTotals`` has a canonical, order-independent form used
to derive the checkout idempotency key.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from src.core.config import SettlementConfig
from src.core.errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidAmount,
    InvalidSelection,
    MultipleSellersError,
    ProductUnavailableError,
)
from src.core.money import add_cents, multiply_cents, percentage_of, to_cents
from src.services.shipping import (
    ShippingDescriptor,
    compute_cart_shipping,
    line_shipping_cents,
    normalize_shipping,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutLine:
    """One priced cart line."""

    product_id: str
    name: str
    unit_amount_cents: int
    quantity: int
    subtotal_cents: int
    shipping: ShippingDescriptor
    shipping_cents: int


@dataclass(frozen=True)
class CheckoutTotals:
    """Computed totals for a single-seller cart.

    ``grand_total_cents`` is what the buyer pays before tax. The platform fee
    is collected from the seller's proceeds and is not part of it.
    """

    seller_id: str
    currency: str
    lines: tuple[CheckoutLine, ...]
    items_subtotal_cents: int
    shipping_cents: int
    has_calculated_shipping: bool
    platform_fee_cents: int
    grand_total_cents: int

    def canonical_payload(self) -> dict[str, Any]:
        """Order-independent representation used for idempotency keys."""
        return {
            "seller_id": self.seller_id,
            "currency": self.currency,
            "lines": [
                {
                    "product_id": line.product_id,
                    "unit_amount_cents": line.unit_amount_cents,
                    "quantity": line.quantity,
                    "shipping_mode": line.shipping.mode.value,
                    "shipping_cents": line.shipping_cents,
                }
                for line in self.lines
            ],
            "items_subtotal_cents": self.items_subtotal_cents,
            "shipping_cents": self.shipping_cents,
            "has_calculated_shipping": self.has_calculated_shipping,
            "platform_fee_cents": self.platform_fee_cents,
            "grand_total_cents": self.grand_total_cents,
        }


def normalize_cart(items: Mapping[str, int] | Iterable[Mapping[str, Any]]) -> dict[str, int]:
    """Collapse a cart into ``{product_id: quantity}``.

    Accepts either a mapping or a list of ``{"product_id", "quantity"}``
    entries; repeated product ids are summed.

    Raises:
        InvalidSelection: If a quantity is not a positive integer.
    """
    entries: Iterable[tuple[Any, Any]]
    if isinstance(items, Mapping):
        entries = items.items()
    else:
        entries = ((entry.get("product_id"), entry.get("quantity", 1)) for entry in items)

    cart: dict[str, int] = {}
    for product_id, quantity in entries:
        if not product_id:
            raise InvalidSelection("Every cart entry needs a product_id.")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise InvalidSelection(
                f"Quantity for product {product_id} must be a positive whole number.",
                product_id=str(product_id),
            )
        key = str(product_id)
        cart[key] = cart.get(key, 0) + quantity
    return cart


def resolve_unit_price_cents(product: Mapping[str, Any]) -> int:
    """Catalog price in cents, preferring ``price_cents`` over decimal ``price``."""
    price_cents = product.get("price_cents")
    if isinstance(price_cents, int) and not isinstance(price_cents, bool):
        if price_cents < 0:
            raise InvalidAmount(price_cents, "catalog price cannot be negative")
        return price_cents
    price = product.get("price")
    if price is None:
        raise InvalidAmount(price, f"product {product.get('id')} has no price")
    return to_cents(price)


def _quantity_cap(product: Mapping[str, Any], config: SettlementConfig) -> int:
    """Largest quantity of ``product`` a single checkout may request."""
    cap = config.max_quantity_per_product
    per_product = product.get("max_quantity_per_order")
    if isinstance(per_product, int) and not isinstance(per_product, bool) and per_product > 0:
        cap = min(cap, per_product)
    if product.get("track_inventory"):
        stock = product.get("stock_quantity")
        cap = min(cap, stock if isinstance(stock, int) and stock > 0 else 0)
    return cap


def build_checkout_totals(
    cart: Mapping[str, int],
    products: Iterable[Mapping[str, Any]],
    config: SettlementConfig,
) -> CheckoutTotals:
    """Compute checkout totals for ``cart`` against catalog ``products``.

    Args:
        cart: Normalized cart, ``{product_id: quantity}``.
        products: Catalog rows as returned by ``CatalogService.resolve_products``.
        config: Fee rate, currency and quantity caps.

    Returns:
        CheckoutTotals: Totals with lines sorted by product id, unit price,
            then quantity.

    Raises:
        EmptyCartError: If the cart has no entries.
        ProductUnavailableError: If any product is missing or archived.
        MultipleSellersError: If products belong to more than one seller.
        InsufficientStockError: If a quantity exceeds a cap or tracked stock.
        MixedShippingModeError: If flat and calculated shipping are mixed.
    """
    if not cart:
        raise EmptyCartError()

    by_id = {str(p.get("id")): p for p in products if p.get("id")}
    unavailable = [
        product_id
        for product_id in cart
        if product_id not in by_id
        or by_id[product_id].get("is_archived")
        or not by_id[product_id].get("tenant_id")
    ]
    if unavailable:
        raise ProductUnavailableError(unavailable)

    seller_ids = {str(by_id[product_id]["tenant_id"]) for product_id in cart}
    if len(seller_ids) != 1:
        raise MultipleSellersError(list(seller_ids))
    seller_id = seller_ids.pop()

    lines: list[CheckoutLine] = []
    for product_id, quantity in cart.items():
        product = by_id[product_id]
        cap = _quantity_cap(product, config)
        if quantity > cap:
            raise InsufficientStockError(product_id, quantity, cap, name=product.get("name"))

        unit_amount_cents = resolve_unit_price_cents(product)
        shipping = normalize_shipping(product)
        lines.append(
            CheckoutLine(
                product_id=product_id,
                name=str(product.get("name") or "Item"),
                unit_amount_cents=unit_amount_cents,
                quantity=quantity,
                subtotal_cents=multiply_cents(unit_amount_cents, quantity),
                shipping=shipping,
                shipping_cents=line_shipping_cents(shipping, quantity),
            )
        )

    lines.sort(key=lambda line: (line.product_id, line.unit_amount_cents, line.quantity))

    items_subtotal_cents = add_cents(*(line.subtotal_cents for line in lines))
    cart_shipping = compute_cart_shipping((line.shipping, line.quantity) for line in lines)
    platform_fee_cents = percentage_of(items_subtotal_cents, config.platform_fee_percentage)

    return CheckoutTotals(
        seller_id=seller_id,
        currency=config.currency,
        lines=tuple(lines),
        items_subtotal_cents=items_subtotal_cents,
        shipping_cents=cart_shipping.shipping_cents,
        has_calculated_shipping=cart_shipping.has_calculated,
        platform_fee_cents=platform_fee_cents,
        grand_total_cents=add_cents(items_subtotal_cents, cart_shipping.shipping_cents),
    )
