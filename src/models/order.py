"""Order model type definitions for database operations."""

from datetime import datetime
from typing import Literal, TypedDict

# Order status enum values matching database enum
OrderStatus = Literal["pending", "paid", "partially_refunded", "refunded", "canceled"]


class OrderLineItem(TypedDict, total=False):
    """Structure for a single line item in an order.

    Stored as part of the items JSONB array. Amounts are cents captured from
    the Stripe Checkout line items; ``amount_total_cents`` already includes
    tax and discounts and is authoritative when present.
    """

    id: str
    product_id: str
    name_snapshot: str
    quantity: int
    unit_amount_cents: int
    amount_subtotal_cents: int | None
    amount_tax_cents: int | None
    amount_total_cents: int | None


class Order(TypedDict, total=False):
    """Order table row representation.

    Represents an order stored in the orders table.
    Maps directly to the database schema.
    """

    id: str
    order_number: str
    tenant_id: str
    buyer_id: str | None
    status: OrderStatus
    currency: str
    items: list[OrderLineItem]
    total_cents: int
    refunded_total_cents: int | None
    last_refund_at: datetime | None
    stripe_checkout_session_id: str | None
    stripe_payment_intent_id: str | None
    stripe_charge_id: str | None
    stripe_account_id: str | None
    created_at: datetime
    updated_at: datetime


class OrderRefundUpdate(TypedDict, total=False):
    """Refund bookkeeping fields that can be updated on an order."""

    status: OrderStatus
    refunded_total_cents: int
    last_refund_at: str | None
