"""Refund API routes for orders."""

from fastapi import APIRouter, Query, status

from src.schemas.refund import (
    RefundAvailabilityResponse,
    RefundCreate,
    RefundResponse,
    RefundStateResponse,
)
from src.services.refund_service import RefundService

router = APIRouter(prefix="/orders", tags=["refunds"])


@router.post(
    "/{order_id}/refunds",
    response_model=RefundResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Refund order lines",
    description=(
        "Refunds selected lines of an order by quantity or amount. "
        "Retrying the same request returns the same refund."
    ),
    responses={
        400: {"description": "Invalid selection or amount"},
        409: {"description": "Order already fully refunded, or amount exceeds the remainder"},
        502: {"description": "Stripe rejected or could not be reached"},
    },
)
async def create_refund(order_id: str, data: RefundCreate) -> RefundResponse:
    """Create a partial refund for an order.

    Args:
        order_id: The order's UUID.
        data: Selections and adjustments.

    Returns:
        RefundResponse: The created refund.
    """
    service = RefundService()
    result = await service.create_refund(order_id, data)
    return RefundResponse.model_validate(result)


@router.get(
    "/{order_id}/refunds/availability",
    response_model=RefundAvailabilityResponse,
    summary="Refundable amounts",
    description="Returns refunded and remaining amounts per order and per line item.",
)
async def get_refund_availability(
    order_id: str,
    include_pending: bool = Query(default=True, description="Count pending refunds as refunded"),
) -> RefundAvailabilityResponse:
    """Summarize what can still be refunded on an order.

    Args:
        order_id: The order's UUID.
        include_pending: Count pending refunds as refunded.

    Returns:
        RefundAvailabilityResponse: Order-level and per-line figures.
    """
    service = RefundService()
    availability = await service.get_refund_availability(order_id, include_pending=include_pending)
    return RefundAvailabilityResponse.model_validate(availability)


@router.post(
    "/{order_id}/refunds/reconcile",
    response_model=RefundStateResponse,
    summary="Reconcile refund state",
    description="Recomputes the order's refunded total and status from its refund records.",
)
async def reconcile_refund_state(
    order_id: str,
    include_pending: bool = Query(default=True, description="Count pending refunds toward the total"),
) -> RefundStateResponse:
    """Recompute an order's refund bookkeeping.

    Args:
        order_id: The order's UUID.
        include_pending: Count pending refunds toward the total.

    Returns:
        RefundStateResponse: Reconciled values.
    """
    service = RefundService()
    result = await service.reconcile_refund_state(order_id, include_pending=include_pending)
    return RefundStateResponse.model_validate(result)
