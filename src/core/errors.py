"""Error taxonomy for checkout and refund settlement.

Every failure the money core can raise derives from ``SettlementError`` and
carries a machine-readable ``code`` plus an ``ErrorCategory``. The API layer
maps categories to HTTP statuses; services only raise.
"""

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Broad classes of settlement failures."""

    VALIDATION = "validation"
    BUSINESS_RULE = "business_rule"
    INTEGRITY = "integrity"
    COLLABORATOR = "collaborator"


_STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.BUSINESS_RULE: 409,
    ErrorCategory.INTEGRITY: 500,
    ErrorCategory.COLLABORATOR: 502,
}


class SettlementError(Exception):
    """Base class for all checkout/refund errors.

    Attributes:
        code: Stable snake_case identifier clients can switch on.
        category: Which part of the taxonomy the error belongs to.
        message: Human-readable, actionable description.
        context: Structured values (ids, amounts) for logs and error payloads.
    """

    code = "settlement_error"
    category = ErrorCategory.INTEGRITY

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Collaborator failures may succeed on retry with the same idempotency key."""
        return self.category is ErrorCategory.COLLABORATOR

    @property
    def status_code(self) -> int:
        """HTTP status the API responds with."""
        return _STATUS_BY_CATEGORY[self.category]


# Money utilities


class InvalidAmount(SettlementError):
    code = "invalid_amount"
    category = ErrorCategory.VALIDATION

    def __init__(self, value: Any, reason: str = "must be a finite amount") -> None:
        super().__init__(f"Invalid amount {value!r}: {reason}", value=str(value))


class ArithmeticOverflow(SettlementError):
    code = "arithmetic_overflow"
    category = ErrorCategory.INTEGRITY

    def __init__(self, value: int) -> None:
        super().__init__("Amount exceeds the safe integer range", value=str(value))


# Checkout


class EmptyCartError(SettlementError):
    code = "empty_cart"
    category = ErrorCategory.VALIDATION

    def __init__(self) -> None:
        super().__init__("Your cart is empty.")


class ProductUnavailableError(SettlementError):
    code = "product_unavailable"
    category = ErrorCategory.VALIDATION

    def __init__(self, product_ids: list[str]) -> None:
        self.product_ids = sorted(product_ids)
        super().__init__(
            "Some products in your cart are no longer available.",
            product_ids=self.product_ids,
        )


class InsufficientStockError(SettlementError):
    code = "insufficient_stock"
    category = ErrorCategory.VALIDATION

    def __init__(self, product_id: str, requested: int, available: int, name: str | None = None) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        label = name or product_id
        super().__init__(
            f"Only {available} of {label} can be purchased (requested {requested}).",
            product_id=product_id,
            requested=requested,
            available=available,
        )


class MixedShippingModeError(SettlementError):
    code = "mixed_shipping_modes"
    category = ErrorCategory.VALIDATION

    def __init__(self, flat_shipping_cents: int) -> None:
        super().__init__(
            "Mixing flat-fee and calculated shipping is not supported. "
            "Please split the cart so shipping is not undercharged.",
            flat_shipping_cents=flat_shipping_cents,
        )


class MultipleSellersError(SettlementError):
    code = "multiple_sellers"
    category = ErrorCategory.VALIDATION

    def __init__(self, seller_ids: list[str]) -> None:
        super().__init__(
            "All items in the cart must belong to the same seller.",
            seller_ids=sorted(seller_ids),
        )


# Refund validation


class InvalidSelection(SettlementError):
    code = "invalid_selection"
    category = ErrorCategory.VALIDATION


class ItemNotFound(SettlementError):
    code = "item_not_found"
    category = ErrorCategory.VALIDATION

    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(f"Item {item_id} is not part of this order.", item_id=item_id)


class ExceedsPurchasedQuantity(SettlementError):
    code = "exceeds_purchased_quantity"
    category = ErrorCategory.VALIDATION

    def __init__(self, item_id: str, requested: int, already_refunded: int, purchased: int) -> None:
        self.item_id = item_id
        super().__init__(
            f"Refund exceeds purchased quantity for item {item_id}: "
            f"requested {requested}, already refunded {already_refunded}, purchased {purchased}.",
            item_id=item_id,
            requested=requested,
            already_refunded=already_refunded,
            purchased=purchased,
        )


class ExceedsLineAmount(SettlementError):
    code = "exceeds_line_amount"
    category = ErrorCategory.VALIDATION

    def __init__(self, item_id: str, requested_cents: int, already_refunded_cents: int, line_total_cents: int) -> None:
        self.item_id = item_id
        super().__init__(
            f"Refund exceeds the line total for item {item_id}: "
            f"requested {requested_cents}, already refunded {already_refunded_cents}, "
            f"line total {line_total_cents} cents.",
            item_id=item_id,
            requested_cents=requested_cents,
            already_refunded_cents=already_refunded_cents,
            line_total_cents=line_total_cents,
        )


class NonPositiveRefundAmount(SettlementError):
    code = "non_positive_refund_amount"
    category = ErrorCategory.VALIDATION

    def __init__(self, amount_cents: int) -> None:
        self.amount_cents = amount_cents
        super().__init__("Computed refund amount must be greater than zero.", amount_cents=amount_cents)


# Refund ceilings


class FullyRefundedError(SettlementError):
    code = "already_fully_refunded"
    category = ErrorCategory.BUSINESS_RULE

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__("Order is already fully refunded.", order_id=order_id)


class ExceedsRefundableError(SettlementError):
    code = "exceeds_remaining"
    category = ErrorCategory.BUSINESS_RULE

    def __init__(self, order_id: str, requested_cents: int, remaining_cents: int) -> None:
        self.order_id = order_id
        self.requested_cents = requested_cents
        self.remaining_cents = remaining_cents
        super().__init__(
            f"Requested refund of {requested_cents} cents exceeds the remaining "
            f"refundable amount of {remaining_cents} cents.",
            order_id=order_id,
            requested_cents=requested_cents,
            remaining_cents=remaining_cents,
        )


class RefundConflictError(SettlementError):
    code = "refund_conflict"
    category = ErrorCategory.BUSINESS_RULE

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(
            "Another refund for this order is in progress. Reload the order and try again.",
            order_id=order_id,
        )

    @property
    def is_retryable(self) -> bool:
        return True


class IdempotencyKeyReused(SettlementError):
    code = "idempotency_key_reused"
    category = ErrorCategory.BUSINESS_RULE

    def __init__(self, order_id: str, idempotency_key: str, refund_id: str | None = None) -> None:
        self.order_id = order_id
        super().__init__(
            "This idempotency key was already used for a different refund on this order. "
            "Send a new key for a new refund.",
            order_id=order_id,
            idempotency_key=idempotency_key,
            refund_id=refund_id,
        )


# Integrity / preconditions


class OrderNotFound(SettlementError):
    code = "order_not_found"
    category = ErrorCategory.INTEGRITY

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found.", order_id=order_id)


class MissingPaymentReference(SettlementError):
    code = "missing_payment_reference"
    category = ErrorCategory.INTEGRITY

    def __init__(self, order_id: str, missing: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order {order_id} has no {missing}.", order_id=order_id, missing=missing)


class SellerAccountMissing(SettlementError):
    code = "seller_account_missing"
    category = ErrorCategory.INTEGRITY

    def __init__(self, seller_id: str) -> None:
        super().__init__("Seller has no Stripe account configured.", seller_id=seller_id)


# Collaborators


class ProcessorError(SettlementError):
    """Failure reported by (or while reaching) the payment processor."""

    code = "processor_error"
    category = ErrorCategory.COLLABORATOR

    def __init__(
        self,
        message: str,
        processor_code: str | None = None,
        request_id: str | None = None,
        http_status: int | None = None,
    ) -> None:
        self.processor_code = processor_code
        self.request_id = request_id
        self.http_status = http_status
        super().__init__(
            message,
            processor_code=processor_code,
            request_id=request_id,
            http_status=http_status,
        )


class StoreError(SettlementError):
    """Failure while reading or writing the document store."""

    code = "store_error"
    category = ErrorCategory.COLLABORATOR

    def __init__(self, message: str, operation: str | None = None) -> None:
        self.operation = operation
        super().__init__(message, operation=operation)

    @property
    def status_code(self) -> int:
        return 503
