"""Unit tests for the refund allocation engine."""

from typing import Any

import pytest

from src.core.errors import (
    ExceedsLineAmount,
    ExceedsPurchasedQuantity,
    ExceedsRefundableError,
    FullyRefundedError,
    ItemNotFound,
    MissingPaymentReference,
    NonPositiveRefundAmount,
)
from src.schemas.refund import AmountSelection, QuantitySelection
from src.services.refund_engine import (
    OrderSnapshot,
    PriorSelection,
    RefundAdjustments,
    aggregate_prior_refunds,
    build_refund_idempotency_key,
    classify_selection,
    compute_refund_state,
    matches_refund_request,
    plan_refund,
    summarize_refundable,
)


def two_line_order(paid_order: dict[str, Any]) -> OrderSnapshot:
    """The paid order with a second line of 3 x 1000 cents."""
    row = dict(paid_order)
    row["items"] = paid_order["items"] + [
        {"id": "item_2", "product_id": "prod_2", "quantity": 3, "unit_amount_cents": 1000}
    ]
    row["total_cents"] = 8000
    return OrderSnapshot.from_row(row)


def quantity_record(quantity: int, refund_cents: int, status: str = "succeeded") -> dict[str, Any]:
    return {
        "id": "refund_1",
        "status": status,
        "amount_cents": refund_cents,
        "selections": [
            {"block_type": "quantity", "item_id": "item_1", "quantity": quantity, "refund_cents": refund_cents}
        ],
        "created_at": "2026-03-01T10:00:00+00:00",
    }


class TestOrderSnapshot:
    """Tests for OrderSnapshot.from_row."""

    def test_reads_order_row(self, paid_order: dict[str, Any]) -> None:
        """Test that the row is read into cents and line snapshots."""
        order = OrderSnapshot.from_row(paid_order)

        assert order.total_cents == 5000
        assert order.remaining_cents == 5000
        assert order.payment_reference == "pi_123"
        assert order.item("item_1").line_total_cents == 5000
        assert order.item("missing") is None

    def test_tolerates_malformed_rows(self, paid_order: dict[str, Any]) -> None:
        """Test defaults for missing quantities, ids and numeric columns."""
        row = dict(paid_order)
        row["refunded_total_cents"] = None
        row["items"] = [{"name_snapshot": "No id"}, {"id": "item_9", "unit_amount_cents": 700}]

        order = OrderSnapshot.from_row(row)

        assert order.refunded_total_cents == 0
        assert [item.item_id for item in order.items] == ["item_9"]
        assert order.items[0].quantity == 1
        assert order.items[0].line_total_cents == 700

    def test_charge_id_is_fallback_reference(self, paid_order: dict[str, Any]) -> None:
        """Test that older orders without a payment intent use the charge."""
        row = dict(paid_order, stripe_payment_intent_id=None)

        assert OrderSnapshot.from_row(row).payment_reference == "ch_123"


class TestClassifySelection:
    """Tests for classify_selection."""

    def test_tagged_row(self) -> None:
        """Test rows written by the refund service."""
        selection = classify_selection(
            {"block_type": "quantity", "item_id": "item_1", "quantity": 1, "refund_cents": 2500}
        )

        assert selection == PriorSelection("quantity", "item_1", quantity=1, refund_cents=2500)

    def test_camel_case_tagged_row(self) -> None:
        """Test rows from the previous admin tool."""
        selection = classify_selection({"blockType": "amount", "itemId": "item_1", "amountCents": 300})

        assert selection == PriorSelection("amount", "item_1", amount_cents=300)

    def test_untagged_rows_are_inferred(self) -> None:
        """Test that untagged rows are classified by field presence."""
        assert classify_selection({"item_id": "item_1", "quantity": 2.0}).block_type == "quantity"
        assert classify_selection({"item_id": "item_1", "amount": 450}).amount_cents == 450

    @pytest.mark.parametrize(
        "raw",
        [
            {"block_type": "bogus", "item_id": "item_1", "quantity": 1},
            {"block_type": "quantity", "item_id": "item_1"},
            {"item_id": "item_1", "quantity": "1"},
            {"quantity": 1},
            {"item_id": "item_1", "amount_cents": float("nan")},
            "not-a-row",
        ],
    )
    def test_unreadable_rows_are_ignored(self, raw: Any) -> None:
        """Test that unknown tags, missing fields and non-numbers give None."""
        assert classify_selection(raw) is None


class TestAggregatePriorRefunds:
    """Tests for aggregate_prior_refunds."""

    def test_counts_pending_and_succeeded_only(self, paid_order: dict[str, Any]) -> None:
        """Test that failed and canceled records are ignored."""
        order = OrderSnapshot.from_row(paid_order)
        records = [
            quantity_record(1, 2500, status="pending"),
            quantity_record(1, 2500, status="failed"),
            quantity_record(1, 2500, status="canceled"),
        ]

        ledger = aggregate_prior_refunds(records, order)

        assert ledger.refunded_cents == 2500
        assert ledger.quantity_for("item_1") == 1
        assert ledger.amount_for("item_1") == 2500

    def test_legacy_single_item_record_takes_whole_amount(self, paid_order: dict[str, Any]) -> None:
        """Test that a record without line amounts attributes its total to its only item."""
        order = OrderSnapshot.from_row(paid_order)
        record = {"status": "succeeded", "amount_cents": 2000, "selections": [{"item_id": "item_1", "quantity": 1}]}

        ledger = aggregate_prior_refunds([record], order)

        assert ledger.amount_for("item_1") == 2000
        assert ledger.quantity_for("item_1") == 1

    def test_legacy_multi_item_record_is_prorated(self, paid_order: dict[str, Any]) -> None:
        """Test that multi-item records without line amounts prorate from the order lines."""
        order = two_line_order(paid_order)
        record = {
            "status": "succeeded",
            "amount_cents": 3000,
            "selections": [
                {"item_id": "item_1", "quantity": 1},
                {"item_id": "item_2", "quantity": 1},
            ],
        }

        ledger = aggregate_prior_refunds([record], order)

        assert ledger.amount_for("item_1") == 2500
        assert ledger.amount_for("item_2") == 1000

    def test_tracks_latest_refund_time(self, paid_order: dict[str, Any]) -> None:
        """Test that last_refund_at is the newest record timestamp."""
        order = OrderSnapshot.from_row(paid_order)
        older = quantity_record(1, 100)
        newer = dict(quantity_record(1, 100), created_at="2026-04-01T10:00:00+00:00")

        ledger = aggregate_prior_refunds([newer, older], order)

        assert ledger.last_refund_at == "2026-04-01T10:00:00+00:00"


class TestPlanRefund:
    """Tests for plan_refund."""

    def test_one_of_two_units(self, paid_order: dict[str, Any]) -> None:
        """Test that 1 of 2 units of a 5000-cent line refunds 2500."""
        order = OrderSnapshot.from_row(paid_order)

        plan = plan_refund(order, [], [QuantitySelection(item_id="item_1", quantity=1)])

        assert plan.amount_cents == 2500
        assert plan.base_cents == 2500
        assert plan.remaining_cents == 5000
        assert plan.selection_rows == [
            {
                "block_type": "quantity",
                "item_id": "item_1",
                "refund_cents": 2500,
                "unit_amount_cents": 2500,
                "amount_total_cents": 5000,
                "quantity": 1,
            }
        ]

    def test_second_refund_cannot_exceed_purchased_units(self, paid_order: dict[str, Any]) -> None:
        """Test that after refunding 1 of 2 units, 2 more units are rejected."""
        order = OrderSnapshot.from_row(dict(paid_order, refunded_total_cents=2500, status="partially_refunded"))

        with pytest.raises(ExceedsPurchasedQuantity) as exc_info:
            plan_refund(order, [quantity_record(1, 2500)], [QuantitySelection(item_id="item_1", quantity=2)])

        assert exc_info.value.context["already_refunded"] == 1

    def test_repeated_selections_in_one_request_add_up(self, paid_order: dict[str, Any]) -> None:
        """Test that two selections of the same line share the quantity cap."""
        order = OrderSnapshot.from_row(paid_order)
        selections = [
            QuantitySelection(item_id="item_1", quantity=2),
            QuantitySelection(item_id="item_1", quantity=1),
        ]

        with pytest.raises(ExceedsPurchasedQuantity):
            plan_refund(order, [], selections)

    def test_fully_refunded_order(self, paid_order: dict[str, Any]) -> None:
        """Test that an order with refunded 3000 of 3000 rejects any refund."""
        order = OrderSnapshot.from_row(
            dict(paid_order, total_cents=3000, refunded_total_cents=3000, status="refunded")
        )

        with pytest.raises(FullyRefundedError):
            plan_refund(order, [], [AmountSelection(item_id="item_1", amount_cents=100)])

    def test_fully_refunded_by_records(self, paid_order: dict[str, Any]) -> None:
        """Test that records summing to the total also count as fully refunded."""
        order = OrderSnapshot.from_row(paid_order)

        with pytest.raises(FullyRefundedError):
            plan_refund(order, [quantity_record(2, 5000)], [AmountSelection(item_id="item_1", amount_cents=1)])

    def test_exceeds_remaining(self, paid_order: dict[str, Any]) -> None:
        """Test that the amount cannot exceed what is left on the order."""
        order = OrderSnapshot.from_row(dict(paid_order, refunded_total_cents=4000))

        with pytest.raises(ExceedsRefundableError) as exc_info:
            plan_refund(order, [], [QuantitySelection(item_id="item_1", quantity=1)])

        assert exc_info.value.requested_cents == 2500
        assert exc_info.value.remaining_cents == 1000

    def test_fees_leave_nothing(self, paid_order: dict[str, Any]) -> None:
        """Test that a restocking fee above the line refund is rejected."""
        order = OrderSnapshot.from_row(paid_order)

        with pytest.raises(NonPositiveRefundAmount):
            plan_refund(
                order,
                [],
                [AmountSelection(item_id="item_1", amount_cents=1000)],
                RefundAdjustments(restocking_fee_cents=1000),
            )

    def test_adjustments_apply(self, paid_order: dict[str, Any]) -> None:
        """Test shipping added and restocking fee withheld."""
        order = OrderSnapshot.from_row(dict(paid_order, total_cents=6000))

        plan = plan_refund(
            order,
            [],
            [QuantitySelection(item_id="item_1", quantity=1)],
            RefundAdjustments(restocking_fee_cents=300, refund_shipping_cents=500, reason="duplicate"),
        )

        assert plan.amount_cents == 2500 + 500 - 300
        assert plan.reason == "duplicate"

    def test_unknown_item(self, paid_order: dict[str, Any]) -> None:
        """Test that selections must reference an order line."""
        order = OrderSnapshot.from_row(paid_order)

        with pytest.raises(ItemNotFound):
            plan_refund(order, [], [QuantitySelection(item_id="item_404", quantity=1)])

    def test_exceeds_line_amount(self, paid_order: dict[str, Any]) -> None:
        """Test that amount refunds are capped by the line total."""
        order = OrderSnapshot.from_row(dict(paid_order, refunded_total_cents=4000))
        prior = {
            "status": "succeeded",
            "amount_cents": 4000,
            "selections": [{"block_type": "amount", "item_id": "item_1", "amount_cents": 4000}],
        }

        with pytest.raises(ExceedsLineAmount):
            plan_refund(order, [prior], [AmountSelection(item_id="item_1", amount_cents=1500)])

    def test_quantity_refunds_count_toward_line_amount(self, paid_order: dict[str, Any]) -> None:
        """Test that prior quantity refunds reduce what amount selections may take."""
        order = OrderSnapshot.from_row(dict(paid_order, refunded_total_cents=2500))

        with pytest.raises(ExceedsLineAmount):
            plan_refund(
                order,
                [quantity_record(1, 2500)],
                [AmountSelection(item_id="item_1", amount_cents=2600)],
            )

    def test_amount_refunds_count_toward_quantity_refunds(self, paid_order: dict[str, Any]) -> None:
        """Test that a line refunded by amount cannot be paid out again by quantity."""
        row = dict(paid_order, total_cents=7000, refunded_total_cents=1900)
        row["items"] = paid_order["items"] + [
            {"id": "item_2", "product_id": "prod_2", "quantity": 2, "unit_amount_cents": 1000, "amount_total_cents": 2000}
        ]
        order = OrderSnapshot.from_row(row)
        prior = {
            "status": "succeeded",
            "amount_cents": 1900,
            "selections": [{"block_type": "amount", "item_id": "item_2", "amount_cents": 1900}],
        }

        with pytest.raises(ExceedsLineAmount) as exc_info:
            plan_refund(order, [prior], [QuantitySelection(item_id="item_2", quantity=2)])

        assert exc_info.value.context["already_refunded_cents"] == 1900
        assert exc_info.value.context["line_total_cents"] == 2000

    def test_amount_then_quantity_in_one_request(self, paid_order: dict[str, Any]) -> None:
        """Test that an amount selection earlier in the request limits a later quantity selection."""
        order = OrderSnapshot.from_row(paid_order)
        selections = [
            AmountSelection(item_id="item_1", amount_cents=3000),
            QuantitySelection(item_id="item_1", quantity=1),
        ]

        with pytest.raises(ExceedsLineAmount):
            plan_refund(order, [], selections)

    def test_quantity_within_line_after_amount_refund(self, paid_order: dict[str, Any]) -> None:
        """Test that a quantity refund still fits when the line has room left."""
        order = OrderSnapshot.from_row(dict(paid_order, refunded_total_cents=1000))
        prior = {
            "status": "succeeded",
            "amount_cents": 1000,
            "selections": [{"block_type": "amount", "item_id": "item_1", "amount_cents": 1000}],
        }

        plan = plan_refund(order, [prior], [QuantitySelection(item_id="item_1", quantity=1)])

        assert plan.amount_cents == 2500

    def test_missing_payment_reference(self, paid_order: dict[str, Any]) -> None:
        """Test that orders without a payment or account cannot be refunded."""
        no_payment = OrderSnapshot.from_row(
            dict(paid_order, stripe_payment_intent_id=None, stripe_charge_id=None)
        )
        no_account = OrderSnapshot.from_row(dict(paid_order, stripe_account_id=None))

        with pytest.raises(MissingPaymentReference):
            plan_refund(no_payment, [], [QuantitySelection(item_id="item_1", quantity=1)])
        with pytest.raises(MissingPaymentReference):
            plan_refund(no_account, [], [QuantitySelection(item_id="item_1", quantity=1)])

    def test_key_override_is_used(self, paid_order: dict[str, Any]) -> None:
        """Test that an explicit idempotency key wins."""
        order = OrderSnapshot.from_row(paid_order)

        plan = plan_refund(
            order,
            [],
            [QuantitySelection(item_id="item_1", quantity=1)],
            RefundAdjustments(idempotency_key="manual-key-1"),
        )

        assert plan.idempotency_key == "manual-key-1"


class TestRefundIdempotencyKey:
    """Tests for build_refund_idempotency_key."""

    def test_ignores_notes_and_selection_order(self, paid_order: dict[str, Any]) -> None:
        """Test that reordering selections or editing notes keeps the key."""
        order = two_line_order(paid_order)
        first = [QuantitySelection(item_id="item_1", quantity=1), AmountSelection(item_id="item_2", amount_cents=500)]
        second = list(reversed(first))

        key_a = build_refund_idempotency_key(order, first, RefundAdjustments(notes="call customer"))
        key_b = build_refund_idempotency_key(order, second, RefundAdjustments(notes="customer called back"))

        assert key_a == key_b
        assert key_a.startswith("refund:acct_seller_123:")

    def test_missing_and_zero_fees_match(self, paid_order: dict[str, Any]) -> None:
        """Test that an omitted fee and a zero fee give the same key."""
        order = OrderSnapshot.from_row(paid_order)
        selections = [QuantitySelection(item_id="item_1", quantity=1)]

        assert build_refund_idempotency_key(order, selections, RefundAdjustments()) == build_refund_idempotency_key(
            order, selections, RefundAdjustments(restocking_fee_cents=0, refund_shipping_cents=0)
        )

    def test_reason_changes_key(self, paid_order: dict[str, Any]) -> None:
        """Test that a different reason is a different request."""
        order = OrderSnapshot.from_row(paid_order)
        selections = [QuantitySelection(item_id="item_1", quantity=1)]

        assert build_refund_idempotency_key(order, selections, RefundAdjustments()) != build_refund_idempotency_key(
            order, selections, RefundAdjustments(reason="fraudulent")
        )


class TestSummaries:
    """Tests for summarize_refundable and compute_refund_state."""

    def test_availability(self, paid_order: dict[str, Any]) -> None:
        """Test per-line remaining quantities and amounts."""
        order = OrderSnapshot.from_row(paid_order)

        availability = summarize_refundable(order, [quantity_record(1, 2500, status="pending")])

        assert availability.remaining_cents == 2500
        assert availability.refunded_total_cents == 2500
        assert availability.remaining_quantity_by_item == {"item_1": 1}
        assert availability.refunded_amount_by_item == {"item_1": 2500}

    def test_availability_without_pending(self, paid_order: dict[str, Any]) -> None:
        """Test that pending refunds can be excluded."""
        order = OrderSnapshot.from_row(paid_order)

        availability = summarize_refundable(
            order, [quantity_record(1, 2500, status="pending")], include_pending=False
        )

        assert availability.remaining_cents == 5000
        assert availability.remaining_quantity_by_item == {"item_1": 2}

    def test_state_partially_refunded(self, paid_order: dict[str, Any]) -> None:
        """Test that a partial refund moves a paid order to partially_refunded."""
        order = OrderSnapshot.from_row(paid_order)

        state = compute_refund_state(order, [quantity_record(1, 2500)])

        assert state.status == "partially_refunded"
        assert state.refunded_total_cents == 2500
        assert state.last_refund_at == "2026-03-01T10:00:00+00:00"
        assert state.changed is True

    def test_state_refunded_and_unchanged(self, paid_order: dict[str, Any]) -> None:
        """Test that an already consistent refunded order reports no change."""
        order = OrderSnapshot.from_row(
            dict(
                paid_order,
                status="refunded",
                refunded_total_cents=5000,
                last_refund_at="2026-03-01T10:00:00+00:00",
            )
        )

        state = compute_refund_state(order, [quantity_record(2, 5000)])

        assert state.status == "refunded"
        assert state.changed is False

    def test_state_keeps_canceled(self, paid_order: dict[str, Any]) -> None:
        """Test that canceled orders keep their status."""
        order = OrderSnapshot.from_row(dict(paid_order, status="canceled"))

        state = compute_refund_state(order, [quantity_record(1, 2500)])

        assert state.status == "canceled"
        assert state.refunded_total_cents == 2500

    def test_state_without_records_is_paid(self, paid_order: dict[str, Any]) -> None:
        """Test that an order with no counted refunds is paid."""
        order = OrderSnapshot.from_row(dict(paid_order, status="partially_refunded", refunded_total_cents=2500))

        state = compute_refund_state(order, [quantity_record(1, 2500, status="failed")])

        assert state.status == "paid"
        assert state.refunded_total_cents == 0
        assert state.changed is True

    def test_state_can_keep_reserved_total(self, paid_order: dict[str, Any]) -> None:
        """Test that keep_column does not lower a total reserved by another refund."""
        order = OrderSnapshot.from_row(dict(paid_order, status="refunded", refunded_total_cents=5000))

        state = compute_refund_state(order, [quantity_record(1, 2500)], keep_column=True)

        assert state.refunded_total_cents == 5000
        assert state.status == "refunded"
        assert state.last_refund_at == "2026-03-01T10:00:00+00:00"


class TestMatchesRefundRequest:
    """Tests for matches_refund_request."""

    def stored(self, **overrides: Any) -> dict[str, Any]:
        record = {
            "id": "refund_1",
            "amount_cents": 2500,
            "reason": None,
            "fees": {"restocking_fee_cents": None, "refund_shipping_cents": None},
            "selections": [
                {"block_type": "quantity", "item_id": "item_1", "quantity": 1, "refund_cents": 2500},
                {"block_type": "amount", "item_id": "item_2", "amount_cents": 400},
            ],
        }
        record.update(overrides)
        return record

    def test_same_request_in_any_order(self) -> None:
        """Test that selection order, notes and zero fees do not matter."""
        selections = [
            AmountSelection(item_id="item_2", amount_cents=400),
            QuantitySelection(item_id="item_1", quantity=1),
        ]

        assert matches_refund_request(
            self.stored(), selections, RefundAdjustments(restocking_fee_cents=0, notes="edited")
        )

    def test_different_fees(self) -> None:
        """Test that a restocking fee makes it a different request."""
        selections = [
            QuantitySelection(item_id="item_1", quantity=1),
            AmountSelection(item_id="item_2", amount_cents=400),
        ]

        assert not matches_refund_request(self.stored(), selections, RefundAdjustments(restocking_fee_cents=500))

    def test_different_selections_or_reason(self) -> None:
        """Test that other lines or another reason do not match."""
        selections = [
            QuantitySelection(item_id="item_1", quantity=2),
            AmountSelection(item_id="item_2", amount_cents=400),
        ]
        same_lines = [
            QuantitySelection(item_id="item_1", quantity=1),
            AmountSelection(item_id="item_2", amount_cents=400),
        ]

        assert not matches_refund_request(self.stored(), selections, RefundAdjustments())
        assert not matches_refund_request(self.stored(), same_lines, RefundAdjustments(reason="duplicate"))
