"""Refund orchestration: validate, reserve, refund at Stripe, record."""

import logging
from dataclasses import dataclass
from typing import Any

from src.core.config import SettlementConfig, get_settlement_config
from src.core.errors import (
    FullyRefundedError,
    IdempotencyKeyReused,
    OrderNotFound,
    ProcessorError,
    RefundConflictError,
    SettlementError,
    StoreError,
)
from src.core.idempotency import canonical_json
from src.core.money import coerce_int_cents
from src.models.order import Order, OrderStatus
from src.models.refund import RefundRecord, RefundRecordCreate
from src.schemas.refund import RefundCreate
from src.services.order_store import OrderStore
from src.services.payment_processor import MAX_METADATA_VALUE_LENGTH, PaymentProcessor
from src.services.refund_engine import (
    COUNTED_STATUSES,
    OrderSnapshot,
    RefundAdjustments,
    RefundAvailability,
    RefundPlan,
    RefundState,
    build_refund_idempotency_key,
    check_order_references,
    compute_refund_state,
    matches_refund_request,
    plan_refund,
    summarize_refundable,
)

logger = logging.getLogger(__name__)

LOCAL_REFUND_STATUSES = frozenset({"succeeded", "pending", "failed", "canceled"})
PROCESSOR_REFUND_REASONS = frozenset({"requested_by_customer", "duplicate", "fraudulent"})

# Attempts to hand a reservation back after Stripe failed
MAX_RELEASE_ATTEMPTS = 3


def to_local_refund_status(status: str | None) -> str:
    """Map a Stripe refund status onto ours; anything unknown is ``pending``."""
    if status in LOCAL_REFUND_STATUSES:
        return status
    return "pending"


def to_processor_refund_reason(reason: str | None) -> str | None:
    """Reasons Stripe accepts pass through; ``other`` and unknown ones are not sent."""
    if reason in PROCESSOR_REFUND_REASONS:
        return reason
    return None


def _status_for_refunded_total(current: str, refunded_cents: int, total_cents: int) -> OrderStatus | None:
    """Order status implied by a refunded total; None leaves a canceled order alone."""
    if current == "canceled":
        return None
    if refunded_cents <= 0:
        return "paid"
    if refunded_cents >= total_cents:
        return "refunded"
    return "partially_refunded"


def _stored_refunded_total(row: Order) -> int | None:
    """The column exactly as stored, for compare-and-set."""
    value = row.get("refunded_total_cents")
    if value is None:
        return None
    return coerce_int_cents(value)


@dataclass(frozen=True)
class RefundResult:
    """Outcome of a refund request."""

    refund_id: str | None
    stripe_refund_id: str
    status: str
    amount_cents: int
    idempotency_key: str


@dataclass(frozen=True)
class RefundStateResult:
    """Outcome of reconciling an order's refund bookkeeping."""

    order_id: str
    status: str
    refunded_total_cents: int
    last_refund_at: str | None
    changed: bool


class RefundService:
    """Service for issuing partial refunds against paid orders.

    Validation always completes before Stripe is called, and the audit record
    is written only after Stripe accepted the refund.
    """

    def __init__(
        self,
        store: OrderStore | None = None,
        processor: PaymentProcessor | None = None,
        config: SettlementConfig | None = None,
    ) -> None:
        """Initialize refund service with collaborators."""
        self.store = store or OrderStore()
        self.processor = processor or PaymentProcessor()
        self.config = config or get_settlement_config()

    async def _load_order(self, order_id: str) -> tuple[Order, OrderSnapshot]:
        row = await self.store.find_order(order_id)
        if not row:
            raise OrderNotFound(order_id)
        return row, OrderSnapshot.from_row(row)

    async def create_refund(self, order_id: str, request: RefundCreate) -> RefundResult:
        """Refund selected lines of an order.

        Args:
            order_id: The order's UUID.
            request: Selections, reason, fees, notes and optional key override.

        Returns:
            RefundResult: Stripe refund id, local status, amount and key.

        Raises:
            OrderNotFound: If the order does not exist.
            SettlementError: Any validation or ceiling failure from the engine.
            RefundConflictError: If another refund changed the order meanwhile.
            IdempotencyKeyReused: If a supplied key belongs to a different refund.
            ProcessorError: If Stripe fails (no record is written).
            StoreError: If Supabase fails.
        """
        row, order = await self._load_order(order_id)
        check_order_references(order)
        if order.remaining_cents == 0:
            logger.warning("Refund rejected for order %s: %s", order_id, FullyRefundedError.code)
            raise FullyRefundedError(order_id)

        records = await self.store.list_refunds_for_order(order_id, COUNTED_STATUSES)

        adjustments = RefundAdjustments(
            reason=request.reason,
            restocking_fee_cents=request.restocking_fee_cents,
            refund_shipping_cents=request.refund_shipping_cents,
            notes=request.notes,
            idempotency_key=request.idempotency_key,
        )

        key = adjustments.idempotency_key or build_refund_idempotency_key(
            order, request.selections, adjustments
        )
        replayed = next((r for r in records if r.get("idempotency_key") == key), None)
        if replayed is not None:
            # A derived key already encodes the request; a caller-supplied one does not
            if adjustments.idempotency_key and not matches_refund_request(
                replayed, request.selections, adjustments
            ):
                logger.warning("Refund rejected for order %s: %s", order_id, IdempotencyKeyReused.code)
                raise IdempotencyKeyReused(order_id, key, replayed.get("id"))
            logger.info("Refund request for order %s matches existing refund %s", order_id, replayed.get("id"))
            return RefundResult(
                refund_id=replayed.get("id"),
                stripe_refund_id=replayed["stripe_refund_id"],
                status=to_local_refund_status(replayed.get("status")),
                amount_cents=coerce_int_cents(replayed.get("amount_cents")),
                idempotency_key=key,
            )

        try:
            plan = plan_refund(order, records, request.selections, adjustments)
        except SettlementError as e:
            logger.warning("Refund rejected for order %s: %s", order_id, e.code)
            raise

        reserved = False
        if self.config.reserve_refund_balance:
            await self._reserve_balance(row, order, plan)
            reserved = True

        try:
            refund = await self.processor.create_refund(
                amount_cents=plan.amount_cents,
                payment_intent_id=order.stripe_payment_intent_id,
                charge_id=order.stripe_charge_id,
                metadata=self._refund_metadata(plan),
                idempotency_key=plan.idempotency_key,
                account_id=order.stripe_account_id,
                reason=to_processor_refund_reason(plan.reason),
            )
        except ProcessorError:
            if reserved:
                await self._release_balance(order_id, plan.amount_cents)
            raise

        status = to_local_refund_status(refund.status)
        if reserved and status in ("failed", "canceled"):
            await self._release_balance(order_id, plan.amount_cents)

        record = await self._record_refund(plan, refund.refund_id, refund.amount_cents, status)
        await self._sync_refund_state(order_id)

        logger.info(
            "Refund %s created for order %s: amount=%s status=%s",
            refund.refund_id,
            order_id,
            refund.amount_cents,
            status,
        )

        return RefundResult(
            refund_id=record.get("id"),
            stripe_refund_id=refund.refund_id,
            status=status,
            amount_cents=refund.amount_cents,
            idempotency_key=plan.idempotency_key,
        )

    def _refund_metadata(self, plan: RefundPlan) -> dict[str, Any]:
        selections = canonical_json(
            [
                {
                    "item_id": line.item_id,
                    "type": line.block_type,
                    "quantity": line.quantity,
                    "amount_cents": line.amount_cents,
                }
                for line in plan.lines
            ]
        )
        if len(selections) > MAX_METADATA_VALUE_LENGTH:
            selections = f"{len(plan.lines)} selections, see refund record"

        return {
            "order_id": plan.order.order_id,
            "order_number": plan.order.order_number,
            "selections": selections,
            "app_reason": plan.reason,
            "restocking_fee_cents": plan.restocking_fee_cents or None,
            "refund_shipping_cents": plan.refund_shipping_cents or None,
        }

    async def _record_refund(
        self,
        plan: RefundPlan,
        stripe_refund_id: str,
        amount_cents: int,
        status: str,
    ) -> RefundRecord:
        data: RefundRecordCreate = {
            "order_id": plan.order.order_id,
            "order_number": plan.order.order_number,
            "stripe_refund_id": stripe_refund_id,
            "stripe_payment_intent_id": plan.order.stripe_payment_intent_id,
            "stripe_charge_id": plan.order.stripe_charge_id,
            "amount_cents": amount_cents,
            "status": status,
            "reason": plan.reason,
            "selections": plan.selection_rows,
            "fees": {
                "restocking_fee_cents": plan.restocking_fee_cents or None,
                "refund_shipping_cents": plan.refund_shipping_cents or None,
            },
            "notes": plan.notes,
            "idempotency_key": plan.idempotency_key,
        }
        try:
            return await self.store.create_refund_record(data)
        except StoreError:
            logger.error(
                "Refund %s succeeded at Stripe but was not recorded for order %s; repair manually",
                stripe_refund_id,
                plan.order.order_id,
            )
            raise

    async def _reserve_balance(self, row: Order, order: OrderSnapshot, plan: RefundPlan) -> None:
        """Add the refund to ``refunded_total_cents`` if nobody else changed it.

        The base is what the engine treated as already refunded, so a stale
        column is corrected by the same write.
        """
        already_refunded = order.total_cents - plan.remaining_cents
        new_total = already_refunded + plan.amount_cents
        updated = await self.store.compare_and_set_refunded_total(
            order.order_id,
            expected_cents=_stored_refunded_total(row),
            new_cents=new_total,
            status=_status_for_refunded_total(order.status, new_total, order.total_cents),
        )
        if not updated:
            logger.warning("Refund rejected for order %s: %s", order.order_id, RefundConflictError.code)
            raise RefundConflictError(order.order_id)

    async def _release_balance(self, order_id: str, amount_cents: int) -> None:
        """Take a reservation back after Stripe did not refund.

        Failures here are logged, not raised; the caller re-raises the
        original processor error and ``reconcile_refund_state`` can repair
        the column later.
        """
        for attempt in range(1, MAX_RELEASE_ATTEMPTS + 1):
            try:
                row = await self.store.find_order(order_id)
                if not row:
                    return
                expected = _stored_refunded_total(row)
                new_total = max(0, (expected or 0) - amount_cents)
                released = await self.store.compare_and_set_refunded_total(
                    order_id,
                    expected_cents=expected,
                    new_cents=new_total,
                    status=_status_for_refunded_total(
                        str(row.get("status") or "paid"),
                        new_total,
                        coerce_int_cents(row.get("total_cents")),
                    ),
                )
            except StoreError as e:
                logger.error("Releasing refund reservation on order %s failed: %s", order_id, e.message)
                return
            if released:
                return
            logger.warning("Refund reservation release on order %s lost a race (attempt %d)", order_id, attempt)

        logger.error(
            "Could not release %s reserved cents on order %s; run refund reconciliation",
            amount_cents,
            order_id,
        )

    async def _sync_refund_state(self, order_id: str) -> None:
        """Bring the order row up to date after a refund was recorded.

        The refund already exists at Stripe and in the audit table, so a
        failure here is logged and left for reconciliation.
        """
        try:
            await self.reconcile_refund_state(order_id, keep_reserved=self.config.reserve_refund_balance)
        except StoreError as e:
            logger.warning("Refund state of order %s not updated after refund: %s", order_id, e.message)

    async def get_refund_availability(self, order_id: str, include_pending: bool = True) -> RefundAvailability:
        """Summarize what has been and can still be refunded on an order.

        Args:
            order_id: The order's UUID.
            include_pending: Count pending refunds as refunded.

        Returns:
            RefundAvailability: Order-level and per-line figures.
        """
        _, order = await self._load_order(order_id)
        statuses = COUNTED_STATUSES if include_pending else ("succeeded",)
        records = await self.store.list_refunds_for_order(order_id, statuses)
        return summarize_refundable(order, records, include_pending=include_pending)

    async def reconcile_refund_state(
        self,
        order_id: str,
        include_pending: bool = True,
        keep_reserved: bool = False,
    ) -> RefundStateResult:
        """Recompute refunded total, last refund time and status from records.

        The order row is only written when something changed.

        Args:
            order_id: The order's UUID.
            include_pending: Count pending refunds toward the total.
            keep_reserved: Never lower the stored refunded total below its
                current value, leaving reservations of in-flight refunds intact.

        Returns:
            RefundStateResult: The reconciled values and whether they changed.
        """
        _, order = await self._load_order(order_id)
        statuses = COUNTED_STATUSES if include_pending else ("succeeded",)
        records = await self.store.list_refunds_for_order(order_id, statuses)
        state: RefundState = compute_refund_state(
            order, records, include_pending=include_pending, keep_column=keep_reserved
        )

        if state.changed:
            await self.store.update_order_refund_state(
                order_id,
                {
                    "refunded_total_cents": state.refunded_total_cents,
                    "last_refund_at": state.last_refund_at,
                    "status": state.status,
                },
            )
            logger.info(
                "Order %s reconciled: refunded_total=%s status=%s",
                order_id,
                state.refunded_total_cents,
                state.status,
            )

        return RefundStateResult(
            order_id=order_id,
            status=state.status,
            refunded_total_cents=state.refunded_total_cents,
            last_refund_at=state.last_refund_at,
            changed=state.changed,
        )
