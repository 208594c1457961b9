"""Catalog model type definitions for database operations."""

from datetime import datetime
from decimal import Decimal
from typing import Literal, TypedDict

ShippingMode = Literal["free", "flat", "calculated"]


class Product(TypedDict, total=False):
    """Products table row representation.

    Prices are stored in major units (``price``) for legacy rows and in
    cents (``price_cents``) for rows written since the cents migration.
    Shipping configuration has accumulated the same way: the decimal
    ``shipping_flat_fee`` predates the cents fields.
    """

    id: str
    tenant_id: str
    name: str
    price: Decimal | float | str | None
    price_cents: int | None
    is_archived: bool
    track_inventory: bool
    stock_quantity: int | None
    max_quantity_per_order: int | None
    shipping_mode: ShippingMode | None
    shipping_fee_cents_per_unit: int | None
    shipping_flat_fee_cents: int | None
    shipping_flat_fee: Decimal | float | str | None
    created_at: datetime
    updated_at: datetime


class Tenant(TypedDict, total=False):
    """Tenants (seller storefronts) table row representation."""

    id: str
    slug: str
    name: str
    stripe_account_id: str | None
    created_at: datetime
