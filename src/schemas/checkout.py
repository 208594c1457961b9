"""Checkout and order Pydantic schemas for API request/response models."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl

# Order status literal type for validation
OrderStatus = Literal["pending", "paid", "partially_refunded", "refunded", "canceled"]


class CartItem(BaseModel):
    """One cart entry. Prices are never taken from the client."""

    model_config = ConfigDict(extra="forbid")

    product_id: str = Field(min_length=1, description="Product UUID")
    quantity: int = Field(default=1, ge=1, description="Units to buy")


class CheckoutTotalsRequest(BaseModel):
    """Schema for previewing totals via POST /checkout/totals."""

    items: list[CartItem] = Field(min_length=1, description="Cart entries")


class CheckoutSessionCreate(BaseModel):
    """Schema for creating a checkout session via POST /checkout/session."""

    items: list[CartItem] = Field(min_length=1, description="Cart entries")
    actor_id: str = Field(min_length=1, max_length=128, description="Buyer id initiating the checkout")
    success_url: HttpUrl | None = Field(default=None, description="URL to redirect after successful checkout")
    cancel_url: HttpUrl | None = Field(default=None, description="URL to redirect if checkout is cancelled")
    customer_email: EmailStr | None = Field(default=None, description="Pre-fill customer email")
    attempt_id: str | None = Field(
        default=None,
        min_length=8,
        max_length=64,
        description="Client-generated id of this checkout attempt; retries reuse it",
    )


class CheckoutLineResponse(BaseModel):
    """Priced cart line."""

    model_config = ConfigDict(from_attributes=True)

    product_id: str = Field(description="Product UUID")
    name: str = Field(description="Product name")
    quantity: int = Field(description="Units")
    unit_amount_cents: int = Field(description="Catalog unit price in cents")
    subtotal_cents: int = Field(description="Unit price x quantity")
    shipping_mode: str = Field(description="free, flat or calculated")
    shipping_cents: int = Field(description="Flat shipping for this line")


class CheckoutTotalsResponse(BaseModel):
    """Computed checkout totals."""

    model_config = ConfigDict(from_attributes=True)

    seller_id: str = Field(description="Seller (tenant) id")
    currency: str = Field(description="Currency code")
    lines: list[CheckoutLineResponse] = Field(description="Priced lines, canonically ordered")
    items_subtotal_cents: int = Field(description="Sum of line subtotals")
    shipping_cents: int = Field(description="Flat shipping total")
    has_calculated_shipping: bool = Field(description="Whether Stripe calculates shipping at checkout")
    platform_fee_cents: int = Field(description="Fee taken from the seller's proceeds")
    grand_total_cents: int = Field(description="Amount the buyer pays before tax")


class CheckoutSessionResponse(BaseModel):
    """Schema for checkout session creation response."""

    model_config = ConfigDict(from_attributes=True)

    checkout_url: str = Field(description="Stripe Checkout URL to redirect to")
    session_id: str = Field(description="Stripe Checkout Session ID")
    idempotency_key: str = Field(description="Idempotency key sent to Stripe")
    totals: CheckoutTotalsResponse = Field(description="Totals the session was created with")


class OrderLineItemSchema(BaseModel):
    """Schema for a single line item in an order."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Line item id")
    product_id: str | None = Field(default=None, description="Product UUID")
    name_snapshot: str | None = Field(default=None, description="Product name at purchase time")
    quantity: int = Field(ge=1, description="Quantity ordered")
    unit_amount_cents: int = Field(ge=0, description="Unit price in cents")
    amount_total_cents: int | None = Field(default=None, description="Line total including tax and discounts")


class OrderResponse(BaseModel):
    """Schema for order API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Order unique identifier")
    order_number: str | None = Field(default=None, description="Human-facing order number")
    tenant_id: str | None = Field(default=None, description="Seller id")
    status: OrderStatus = Field(description="Order status")
    currency: str = Field(default="usd", description="Currency code")
    items: list[OrderLineItemSchema] = Field(default_factory=list, description="Order line items")
    total_cents: int = Field(description="Total amount in cents")
    refunded_total_cents: int = Field(default=0, description="Cents refunded so far")
    last_refund_at: datetime | None = Field(default=None, description="Most recent refund timestamp")
    created_at: datetime | None = Field(default=None, description="Creation timestamp")
