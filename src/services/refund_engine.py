"""Refund allocation engine.

Pure computation: given an order snapshot, its prior refund records and the
requested line selections, decide how many cents to refund or reject the
request. Nothing here touches Supabase or Stripe; ``RefundService`` feeds the
engine and acts on its ``RefundPlan``.

Stored selections come in three shapes: tagged rows written by this service
(``block_type``), rows from the previous admin tool tagged with
``blockType``, and untagged rows whose kind is inferred from which fields are
present. ``classify_selection`` is the only place that knows about those
shapes.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Literal, Mapping, Sequence

from src.core.errors import (
    ExceedsLineAmount,
    ExceedsPurchasedQuantity,
    ExceedsRefundableError,
    FullyRefundedError,
    ItemNotFound,
    MissingPaymentReference,
    NonPositiveRefundAmount,
)
from src.core.idempotency import derive_key
from src.core.money import add_cents, coerce_int_cents, multiply_cents, prorate_cents
from src.models.refund import RefundSelectionRow
from src.schemas.refund import AmountSelection, QuantitySelection

logger = logging.getLogger(__name__)

# Refund statuses that count against an order's caps
COUNTED_STATUSES: tuple[str, ...] = ("succeeded", "pending")

_TAG_KEYS = ("block_type", "blockType", "type")
_ITEM_KEYS = ("item_id", "itemId")
_AMOUNT_KEYS = ("amount_cents", "amountCents", "amount")

Selection = QuantitySelection | AmountSelection


@dataclass(frozen=True)
class OrderItemSnapshot:
    """One purchased line as the engine sees it."""

    item_id: str
    product_id: str | None
    name: str
    quantity: int
    unit_amount_cents: int
    amount_total_cents: int | None = None

    @property
    def line_total_cents(self) -> int:
        """Authoritative line total, falling back to unit price x quantity.

        ``amount_total_cents`` comes from Stripe and already reflects tax and
        discounts, so it wins whenever it was captured.
        """
        if self.amount_total_cents is not None:
            return self.amount_total_cents
        return multiply_cents(self.unit_amount_cents, self.quantity)


@dataclass(frozen=True)
class OrderSnapshot:
    """Read-only view of an order row used for refund decisions."""

    order_id: str
    order_number: str | None
    status: str
    currency: str
    total_cents: int
    refunded_total_cents: int
    items: tuple[OrderItemSnapshot, ...]
    stripe_payment_intent_id: str | None = None
    stripe_charge_id: str | None = None
    stripe_account_id: str | None = None
    last_refund_at: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "OrderSnapshot":
        """Build a snapshot from an ``orders`` row.

        Missing or malformed numeric columns read as zero; line items without
        an id are skipped since selections cannot reference them.
        """
        items = []
        for raw in row.get("items") or []:
            if not isinstance(raw, Mapping) or not raw.get("id"):
                continue
            quantity = raw.get("quantity")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
                quantity = 1
            total = raw.get("amount_total_cents")
            items.append(
                OrderItemSnapshot(
                    item_id=str(raw["id"]),
                    product_id=raw.get("product_id"),
                    name=str(raw.get("name_snapshot") or "Item"),
                    quantity=quantity,
                    unit_amount_cents=coerce_int_cents(raw.get("unit_amount_cents")),
                    amount_total_cents=None if total is None else coerce_int_cents(total),
                )
            )

        last_refund_at = row.get("last_refund_at")
        if isinstance(last_refund_at, datetime):
            last_refund_at = last_refund_at.isoformat()

        return cls(
            order_id=str(row["id"]),
            order_number=row.get("order_number"),
            status=str(row.get("status") or "paid"),
            currency=str(row.get("currency") or "usd"),
            total_cents=coerce_int_cents(row.get("total_cents")),
            refunded_total_cents=coerce_int_cents(row.get("refunded_total_cents")),
            items=tuple(items),
            stripe_payment_intent_id=row.get("stripe_payment_intent_id") or None,
            stripe_charge_id=row.get("stripe_charge_id") or None,
            stripe_account_id=row.get("stripe_account_id") or None,
            last_refund_at=last_refund_at,
        )

    @property
    def payment_reference(self) -> str | None:
        """Payment intent id, or the charge id for older orders."""
        return self.stripe_payment_intent_id or self.stripe_charge_id

    @property
    def remaining_cents(self) -> int:
        return max(0, self.total_cents - self.refunded_total_cents)

    def item(self, item_id: str) -> OrderItemSnapshot | None:
        for item in self.items:
            if item.item_id == item_id:
                return item
        return None


@dataclass(frozen=True)
class PriorSelection:
    """A stored selection, reduced to the tagged shape."""

    block_type: Literal["quantity", "amount"]
    item_id: str
    quantity: int = 0
    amount_cents: int = 0
    refund_cents: int | None = None


def _first_present(raw: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _whole_number(value: Any) -> int | None:
    """Truncate a stored JSON number; anything else is not a number."""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, Decimal) and not value.is_finite():
        return None
    return int(value)


def classify_selection(raw: Any) -> PriorSelection | None:
    """Interpret one stored selection row.

    Tagged rows are read by their tag. Untagged rows are a quantity selection
    when they carry a numeric ``quantity``, otherwise an amount selection when
    they carry ``amount_cents``/``amountCents``/``amount``. Rows that match
    nothing (or carry an unknown tag) return ``None`` and are ignored.
    """
    if not isinstance(raw, Mapping):
        return None

    item_id = _first_present(raw, _ITEM_KEYS)
    if not isinstance(item_id, str) or not item_id:
        return None

    tagged = any(key in raw for key in _TAG_KEYS)
    tag = _first_present(raw, _TAG_KEYS)
    quantity = _whole_number(raw.get("quantity"))
    amount = next(
        (n for n in (_whole_number(raw.get(k)) for k in _AMOUNT_KEYS) if n is not None),
        None,
    )
    refund_cents = _whole_number(raw.get("refund_cents"))

    if tagged:
        if tag == "quantity" and quantity is not None:
            return PriorSelection("quantity", item_id, quantity=quantity, refund_cents=refund_cents)
        if tag == "amount" and amount is not None:
            return PriorSelection("amount", item_id, amount_cents=amount)
        return None

    if quantity is not None:
        return PriorSelection("quantity", item_id, quantity=quantity, refund_cents=refund_cents)
    if amount is not None:
        return PriorSelection("amount", item_id, amount_cents=amount)
    return None


@dataclass
class RefundLedger:
    """Per-item totals replayed from prior refund records."""

    refunded_quantity: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    refunded_amount: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    refunded_cents: int = 0
    last_refund_at: str | None = None

    def add_quantity(self, item_id: str, quantity: int) -> None:
        if quantity > 0:
            self.refunded_quantity[item_id] += quantity

    def add_amount(self, item_id: str, cents: int) -> None:
        if cents > 0:
            self.refunded_amount[item_id] = add_cents(self.refunded_amount[item_id], cents)

    def quantity_for(self, item_id: str) -> int:
        return self.refunded_quantity.get(item_id, 0)

    def amount_for(self, item_id: str) -> int:
        return self.refunded_amount.get(item_id, 0)


def _record_timestamp(record: Mapping[str, Any]) -> str | None:
    value = record.get("updated_at") or record.get("created_at")
    if isinstance(value, datetime):
        return value.isoformat()
    return value or None


def aggregate_prior_refunds(
    records: Iterable[Mapping[str, Any]],
    order: OrderSnapshot,
    statuses: Sequence[str] = COUNTED_STATUSES,
) -> RefundLedger:
    """Replay prior refund records into per-item quantity and amount totals.

    Quantity selections contribute the ``refund_cents`` stored with them.
    Older rows lack it: if such a record has no per-line amounts at all and
    references a single item, the whole record amount is attributed to that
    item; otherwise the line is prorated from the current order line.
    """
    ledger = RefundLedger()

    for record in records:
        if record.get("status", "succeeded") not in statuses:
            continue

        record_cents = coerce_int_cents(record.get("amount_cents"))
        ledger.refunded_cents = add_cents(ledger.refunded_cents, record_cents)

        timestamp = _record_timestamp(record)
        if timestamp and (ledger.last_refund_at is None or timestamp > ledger.last_refund_at):
            ledger.last_refund_at = timestamp

        raw_selections = record.get("selections")
        if not isinstance(raw_selections, list):
            raw_selections = []
        parsed = [sel for sel in (classify_selection(raw) for raw in raw_selections) if sel]
        if len(parsed) != len(raw_selections):
            logger.debug(
                "Ignored %d unreadable selections on refund %s",
                len(raw_selections) - len(parsed),
                record.get("id"),
            )

        has_line_amounts = any(
            sel.block_type == "amount" or sel.refund_cents is not None for sel in parsed
        )
        item_ids = {sel.item_id for sel in parsed}

        for sel in parsed:
            if sel.block_type == "amount":
                ledger.add_amount(sel.item_id, sel.amount_cents)
                continue
            ledger.add_quantity(sel.item_id, sel.quantity)
            if sel.refund_cents is not None:
                ledger.add_amount(sel.item_id, sel.refund_cents)
            elif has_line_amounts or len(item_ids) != 1:
                item = order.item(sel.item_id)
                if item is not None and sel.quantity > 0:
                    ledger.add_amount(
                        sel.item_id,
                        prorate_cents(item.line_total_cents, sel.quantity, item.quantity),
                    )

        if not has_line_amounts and len(item_ids) == 1:
            ledger.add_amount(next(iter(item_ids)), record_cents)

    return ledger


@dataclass(frozen=True)
class RefundAdjustments:
    """Request-level options applied on top of the line refunds."""

    reason: str | None = None
    restocking_fee_cents: int | None = None
    refund_shipping_cents: int | None = None
    notes: str | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class LineRefund:
    """Computed refund for one requested selection."""

    item_id: str
    block_type: Literal["quantity", "amount"]
    refund_cents: int
    unit_amount_cents: int
    line_total_cents: int
    quantity: int | None = None
    amount_cents: int | None = None

    def to_row(self) -> RefundSelectionRow:
        """Tagged shape persisted on the refund record."""
        row: RefundSelectionRow = {
            "block_type": self.block_type,
            "item_id": self.item_id,
            "refund_cents": self.refund_cents,
            "unit_amount_cents": self.unit_amount_cents,
            "amount_total_cents": self.line_total_cents,
        }
        if self.block_type == "quantity":
            row["quantity"] = self.quantity
        else:
            row["amount_cents"] = self.amount_cents
        return row


@dataclass(frozen=True)
class RefundPlan:
    """A validated refund, ready to send to Stripe."""

    order: OrderSnapshot
    lines: tuple[LineRefund, ...]
    base_cents: int
    refund_shipping_cents: int
    restocking_fee_cents: int
    amount_cents: int
    remaining_cents: int
    idempotency_key: str
    reason: str | None = None
    notes: str | None = None

    @property
    def selection_rows(self) -> list[RefundSelectionRow]:
        return [line.to_row() for line in self.lines]


def check_order_references(order: OrderSnapshot) -> None:
    """Fail fast when the order cannot be refunded through Stripe at all."""
    if not order.payment_reference:
        raise MissingPaymentReference(order.order_id, "payment intent or charge")
    if not order.stripe_account_id:
        raise MissingPaymentReference(order.order_id, "Stripe account")


def remaining_refundable_cents(order: OrderSnapshot, ledger: RefundLedger | None = None) -> int:
    """Order total minus what is already refunded, never negative.

    The order column and the sum of counted records can disagree (a refund
    reserved but not yet recorded, or a stale column); the larger one wins.
    """
    refunded = order.refunded_total_cents
    if ledger is not None:
        refunded = max(refunded, ledger.refunded_cents)
    return max(0, order.total_cents - refunded)


def _selection_sort_key(selection: Selection) -> tuple[str, str, int]:
    if isinstance(selection, QuantitySelection):
        return (selection.item_id, selection.type, selection.quantity)
    return (selection.item_id, selection.type, selection.amount_cents)


def build_refund_idempotency_key(
    order: OrderSnapshot,
    selections: Sequence[Selection],
    adjustments: RefundAdjustments,
) -> str:
    """Derive the Stripe idempotency key for a refund request.

    Selections are sorted so their order in the request does not matter.
    Notes are not part of the payload; editing them must not produce a
    second refund. There is no salt, so a retried request deduplicates.
    """
    payload = {
        "order_id": order.order_id,
        "selections": [
            selection.model_dump(mode="json")
            for selection in sorted(selections, key=_selection_sort_key)
        ],
        "options": {
            "reason": adjustments.reason,
            "restocking_fee_cents": adjustments.restocking_fee_cents or 0,
            "refund_shipping_cents": adjustments.refund_shipping_cents or 0,
        },
    }
    return derive_key(
        "refund",
        order.stripe_account_id or "platform",
        order.order_id,
        payload,
    )


def _fee_cents(fees: Mapping[str, Any], *keys: str) -> int:
    return coerce_int_cents(_first_present(fees, keys))


def matches_refund_request(
    record: Mapping[str, Any],
    selections: Sequence[Selection],
    adjustments: RefundAdjustments,
) -> bool:
    """Whether a stored refund was created from the same request.

    Compares selections regardless of order, fees and reason. Notes are
    ignored, as they are for the derived key.
    """
    raw_selections = record.get("selections")
    if not isinstance(raw_selections, list):
        raw_selections = []
    stored = sorted(
        (sel.block_type, sel.item_id, sel.quantity if sel.block_type == "quantity" else sel.amount_cents)
        for sel in (classify_selection(raw) for raw in raw_selections)
        if sel is not None
    )
    requested = sorted(
        ("quantity", sel.item_id, sel.quantity)
        if isinstance(sel, QuantitySelection)
        else ("amount", sel.item_id, sel.amount_cents)
        for sel in selections
    )
    if stored != requested:
        return False

    fees = record.get("fees")
    if not isinstance(fees, Mapping):
        fees = {}
    stored_fees = (
        _fee_cents(fees, "restocking_fee_cents", "restockingFeeCents"),
        _fee_cents(fees, "refund_shipping_cents", "refundShippingCents"),
    )
    requested_fees = (
        max(0, adjustments.restocking_fee_cents or 0),
        adjustments.refund_shipping_cents or 0,
    )
    if stored_fees != requested_fees:
        return False

    return (record.get("reason") or None) == (adjustments.reason or None)


def plan_refund(
    order: OrderSnapshot,
    prior_records: Iterable[Mapping[str, Any]],
    selections: Sequence[Selection],
    adjustments: RefundAdjustments | None = None,
) -> RefundPlan:
    """Validate a refund request and compute its amount.

    Args:
        order: Snapshot of the order being refunded.
        prior_records: Refund records already stored for the order.
        selections: Requested line selections.
        adjustments: Reason, fees, notes and an optional key override.

    Returns:
        RefundPlan: Amount, per-line breakdown and idempotency key.

    Raises:
        MissingPaymentReference: If the order has no payment or account reference.
        FullyRefundedError: If nothing is left to refund.
        ItemNotFound: If a selection references an unknown line.
        ExceedsPurchasedQuantity: If a quantity selection over-refunds units.
        ExceedsLineAmount: If a selection pushes a line past its total.
        NonPositiveRefundAmount: If fees leave nothing to refund.
        ExceedsRefundableError: If the amount exceeds the order's remainder.
    """
    adjustments = adjustments or RefundAdjustments()

    check_order_references(order)
    if order.remaining_cents == 0:
        raise FullyRefundedError(order.order_id)

    ledger = aggregate_prior_refunds(prior_records, order)
    remaining = remaining_refundable_cents(order, ledger)
    if remaining == 0:
        raise FullyRefundedError(order.order_id)

    # Repeated selections for one item in a single request add up
    requested_qty: dict[str, int] = defaultdict(int)
    requested_amount: dict[str, int] = defaultdict(int)
    lines: list[LineRefund] = []

    for selection in selections:
        item = order.item(selection.item_id)
        if item is None:
            raise ItemNotFound(selection.item_id)
        line_total = item.line_total_cents

        if isinstance(selection, QuantitySelection):
            already = ledger.quantity_for(item.item_id) + requested_qty[item.item_id]
            if selection.quantity + already > item.quantity:
                raise ExceedsPurchasedQuantity(item.item_id, selection.quantity, already, item.quantity)
            refund_cents = prorate_cents(line_total, selection.quantity, item.quantity)
            already_cents = ledger.amount_for(item.item_id) + requested_amount[item.item_id]
            if refund_cents + already_cents > line_total:
                raise ExceedsLineAmount(item.item_id, refund_cents, already_cents, line_total)
            requested_qty[item.item_id] += selection.quantity
            requested_amount[item.item_id] += refund_cents
            lines.append(
                LineRefund(
                    item_id=item.item_id,
                    block_type="quantity",
                    refund_cents=refund_cents,
                    unit_amount_cents=item.unit_amount_cents,
                    line_total_cents=line_total,
                    quantity=selection.quantity,
                )
            )
            continue

        already_cents = ledger.amount_for(item.item_id) + requested_amount[item.item_id]
        if selection.amount_cents + already_cents > line_total:
            raise ExceedsLineAmount(item.item_id, selection.amount_cents, already_cents, line_total)
        requested_amount[item.item_id] += selection.amount_cents
        lines.append(
            LineRefund(
                item_id=item.item_id,
                block_type="amount",
                refund_cents=selection.amount_cents,
                unit_amount_cents=item.unit_amount_cents,
                line_total_cents=line_total,
                amount_cents=selection.amount_cents,
            )
        )

    base_cents = add_cents(*(line.refund_cents for line in lines))
    shipping_cents = adjustments.refund_shipping_cents or 0
    restocking_cents = max(0, adjustments.restocking_fee_cents or 0)
    amount_cents = add_cents(base_cents, shipping_cents, -restocking_cents)
    if amount_cents <= 0:
        raise NonPositiveRefundAmount(amount_cents)

    if amount_cents > remaining:
        raise ExceedsRefundableError(order.order_id, amount_cents, remaining)

    idempotency_key = adjustments.idempotency_key or build_refund_idempotency_key(
        order, selections, adjustments
    )

    return RefundPlan(
        order=order,
        lines=tuple(lines),
        base_cents=base_cents,
        refund_shipping_cents=shipping_cents,
        restocking_fee_cents=restocking_cents,
        amount_cents=amount_cents,
        remaining_cents=remaining,
        idempotency_key=idempotency_key,
        reason=adjustments.reason,
        notes=adjustments.notes,
    )


@dataclass(frozen=True)
class RefundAvailability:
    """What is already refunded on an order and what is left."""

    order_id: str
    total_cents: int
    refunded_total_cents: int
    remaining_cents: int
    remaining_quantity_by_item: dict[str, int]
    refunded_quantity_by_item: dict[str, int]
    refunded_amount_by_item: dict[str, int]


def summarize_refundable(
    order: OrderSnapshot,
    records: Iterable[Mapping[str, Any]],
    include_pending: bool = True,
) -> RefundAvailability:
    """Summarize refunded and refundable amounts per order and per line."""
    statuses = COUNTED_STATUSES if include_pending else ("succeeded",)
    ledger = aggregate_prior_refunds(records, order, statuses=statuses)
    remaining = remaining_refundable_cents(order, ledger)

    return RefundAvailability(
        order_id=order.order_id,
        total_cents=order.total_cents,
        refunded_total_cents=order.total_cents - remaining,
        remaining_cents=remaining,
        remaining_quantity_by_item={
            item.item_id: max(0, item.quantity - ledger.quantity_for(item.item_id))
            for item in order.items
        },
        refunded_quantity_by_item=dict(ledger.refunded_quantity),
        refunded_amount_by_item=dict(ledger.refunded_amount),
    )


@dataclass(frozen=True)
class RefundState:
    """Order refund bookkeeping recomputed from stored records."""

    status: str
    refunded_total_cents: int
    last_refund_at: str | None
    changed: bool


def compute_refund_state(
    order: OrderSnapshot,
    records: Iterable[Mapping[str, Any]],
    include_pending: bool = True,
    keep_column: bool = False,
) -> RefundState:
    """Derive refunded total, last refund time and status from records.

    A canceled order keeps its status. ``changed`` is False when the order
    row already holds these values, so callers can skip the write. With
    ``keep_column`` the stored ``refunded_total_cents`` is a floor, so
    balance reserved by refunds still in flight is not handed back.
    """
    statuses = COUNTED_STATUSES if include_pending else ("succeeded",)
    ledger = aggregate_prior_refunds(records, order, statuses=statuses)
    refunded = ledger.refunded_cents
    if keep_column:
        refunded = max(refunded, order.refunded_total_cents)

    status = order.status
    if status != "canceled":
        if refunded <= 0:
            status = "paid"
        elif refunded >= order.total_cents:
            status = "refunded"
        else:
            status = "partially_refunded"

    changed = (
        order.refunded_total_cents != refunded
        or order.last_refund_at != ledger.last_refund_at
        or order.status != status
    )
    return RefundState(
        status=status,
        refunded_total_cents=refunded,
        last_refund_at=ledger.last_refund_at,
        changed=changed,
    )
