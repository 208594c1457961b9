"""Database model type definitions."""

from src.models.order import Order, OrderLineItem, OrderRefundUpdate, OrderStatus
from src.models.product import Product, ShippingMode, Tenant
from src.models.refund import (
    RefundFees,
    RefundReason,
    RefundRecord,
    RefundRecordCreate,
    RefundSelectionRow,
    RefundStatus,
)

__all__ = [
    "Order",
    "OrderLineItem",
    "OrderRefundUpdate",
    "OrderStatus",
    "Product",
    "ShippingMode",
    "Tenant",
    "RefundFees",
    "RefundReason",
    "RefundRecord",
    "RefundRecordCreate",
    "RefundSelectionRow",
    "RefundStatus",
]
