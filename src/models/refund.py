"""Refund audit record type definitions for database operations."""

from datetime import datetime
from typing import Literal, TypedDict

RefundStatus = Literal["succeeded", "pending", "failed", "canceled"]
RefundReason = Literal["requested_by_customer", "duplicate", "fraudulent", "other"]
SelectionBlockType = Literal["quantity", "amount"]


class RefundSelectionRow(TypedDict, total=False):
    """One stored line selection of a refund.

    Rows written by this service always carry ``block_type``. Historical rows
    may lack it (and may use camelCase keys); they are interpreted by field
    presence in ``refund_engine.classify_selection``.
    """

    block_type: SelectionBlockType
    item_id: str
    quantity: int | None
    amount_cents: int | None
    refund_cents: int
    unit_amount_cents: int
    amount_total_cents: int


class RefundFees(TypedDict, total=False):
    """Fee adjustments applied on top of the line refunds."""

    restocking_fee_cents: int | None
    refund_shipping_cents: int | None


class RefundRecord(TypedDict, total=False):
    """Refunds table row representation (append-only audit log)."""

    id: str
    order_id: str
    order_number: str | None
    stripe_refund_id: str
    stripe_payment_intent_id: str | None
    stripe_charge_id: str | None
    amount_cents: int
    status: RefundStatus
    reason: RefundReason | None
    selections: list[RefundSelectionRow]
    fees: RefundFees
    notes: str | None
    idempotency_key: str
    created_at: datetime
    updated_at: datetime


class RefundRecordCreate(TypedDict, total=False):
    """Data required to insert a refund audit record."""

    order_id: str
    order_number: str | None
    stripe_refund_id: str
    stripe_payment_intent_id: str | None
    stripe_charge_id: str | None
    amount_cents: int
    status: RefundStatus
    reason: RefundReason | None
    selections: list[RefundSelectionRow]
    fees: RefundFees
    notes: str | None
    idempotency_key: str
