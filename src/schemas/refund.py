"""Refund Pydantic schemas for API request/response models."""

from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

RefundReason = Literal["requested_by_customer", "duplicate", "fraudulent", "other"]
RefundStatus = Literal["succeeded", "pending", "failed", "canceled"]

# Request bounds for the refund endpoint
MAX_SELECTION_QUANTITY = 100
MAX_SELECTION_AMOUNT_CENTS = 1_000_000
MAX_RESTOCKING_FEE_CENTS = 3000
MAX_REFUND_SHIPPING_CENTS = 15000


class QuantitySelection(BaseModel):
    """Refund ``quantity`` of the purchased units of one line, prorated."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["quantity"] = "quantity"
    item_id: str = Field(min_length=1, description="Order line item id")
    quantity: int = Field(ge=1, le=MAX_SELECTION_QUANTITY, description="Units to refund")


class AmountSelection(BaseModel):
    """Refund an explicit number of cents against one line."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["amount"] = "amount"
    item_id: str = Field(min_length=1, description="Order line item id")
    amount_cents: int = Field(ge=1, le=MAX_SELECTION_AMOUNT_CENTS, description="Cents to refund")


LineSelection = Annotated[QuantitySelection | AmountSelection, Field(discriminator="type")]


class RefundCreate(BaseModel):
    """Schema for creating a refund via POST /orders/{order_id}/refunds."""

    model_config = ConfigDict(extra="forbid")

    selections: list[LineSelection] = Field(min_length=1, description="Lines to refund")
    reason: RefundReason | None = Field(default=None, description="Why the refund is issued")
    restocking_fee_cents: int | None = Field(
        default=None,
        ge=0,
        le=MAX_RESTOCKING_FEE_CENTS,
        description="Fee withheld from the refund",
    )
    refund_shipping_cents: int | None = Field(
        default=None,
        ge=0,
        le=MAX_REFUND_SHIPPING_CENTS,
        description="Shipping added to the refund",
    )
    notes: str | None = Field(default=None, max_length=1000, description="Internal notes (not part of the idempotency key)")
    idempotency_key: str | None = Field(
        default=None,
        min_length=8,
        max_length=128,
        description="Override the derived idempotency key",
    )


class RefundResponse(BaseModel):
    """Schema for refund creation response."""

    model_config = ConfigDict(from_attributes=True)

    refund_id: str | None = Field(default=None, description="Refund audit record id")
    stripe_refund_id: str = Field(description="Stripe refund id")
    status: RefundStatus = Field(description="Refund status reported by Stripe")
    amount_cents: int = Field(description="Refunded amount in cents")
    idempotency_key: str = Field(description="Idempotency key sent to Stripe")


class RefundAvailabilityResponse(BaseModel):
    """What can still be refunded on an order."""

    model_config = ConfigDict(from_attributes=True)

    order_id: str = Field(description="Order id")
    total_cents: int = Field(description="Order total in cents")
    refunded_total_cents: int = Field(description="Cents already refunded (including pending if requested)")
    remaining_cents: int = Field(description="Cents still refundable")
    remaining_quantity_by_item: dict[str, int] = Field(description="Units still refundable per line item")
    refunded_quantity_by_item: dict[str, int] = Field(description="Units refunded per line item")
    refunded_amount_by_item: dict[str, int] = Field(description="Cents refunded per line item")


class RefundStateResponse(BaseModel):
    """Result of reconciling an order's refund bookkeeping."""

    model_config = ConfigDict(from_attributes=True)

    order_id: str = Field(description="Order id")
    status: str = Field(description="Order status after reconciliation")
    refunded_total_cents: int = Field(description="Refunded total after reconciliation")
    last_refund_at: datetime | None = Field(default=None, description="Most recent refund timestamp")
    changed: bool = Field(description="Whether the order row was updated")
