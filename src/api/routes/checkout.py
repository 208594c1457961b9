"""Checkout API routes for Stripe integration."""

from typing import Any

from fastapi import APIRouter, status

from src.api.middleware.error_handler import NotFoundError
from src.schemas.checkout import (
    CheckoutLineResponse,
    CheckoutSessionCreate,
    CheckoutSessionResponse,
    CheckoutTotalsRequest,
    CheckoutTotalsResponse,
    OrderResponse,
)
from src.services.checkout_service import CheckoutService
from src.services.checkout_totals import CheckoutTotals
from src.services.order_store import OrderStore
from src.services.refund_engine import OrderSnapshot

router = APIRouter(prefix="/checkout", tags=["checkout"])


def _totals_response(totals: CheckoutTotals) -> CheckoutTotalsResponse:
    return CheckoutTotalsResponse(
        seller_id=totals.seller_id,
        currency=totals.currency,
        lines=[
            CheckoutLineResponse(
                product_id=line.product_id,
                name=line.name,
                quantity=line.quantity,
                unit_amount_cents=line.unit_amount_cents,
                subtotal_cents=line.subtotal_cents,
                shipping_mode=line.shipping.mode.value,
                shipping_cents=line.shipping_cents,
            )
            for line in totals.lines
        ],
        items_subtotal_cents=totals.items_subtotal_cents,
        shipping_cents=totals.shipping_cents,
        has_calculated_shipping=totals.has_calculated_shipping,
        platform_fee_cents=totals.platform_fee_cents,
        grand_total_cents=totals.grand_total_cents,
    )


@router.post(
    "/totals",
    response_model=CheckoutTotalsResponse,
    summary="Preview checkout totals",
    description="Prices a single-seller cart against the catalog without contacting Stripe.",
)
async def preview_checkout_totals(data: CheckoutTotalsRequest) -> CheckoutTotalsResponse:
    """Compute subtotal, shipping and platform fee for a cart.

    Args:
        data: Cart entries.

    Returns:
        CheckoutTotalsResponse: Computed totals.
    """
    service = CheckoutService()
    totals = await service.preview_totals([item.model_dump() for item in data.items])
    return _totals_response(totals)


@router.post(
    "/session",
    response_model=CheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Stripe Checkout Session",
    description="Creates a Stripe Checkout Session on the seller's connected account.",
)
async def create_checkout_session(data: CheckoutSessionCreate) -> CheckoutSessionResponse:
    """Create a Stripe Checkout Session for a cart.

    The frontend should redirect to the returned checkout_url. Orders are
    created from Stripe's completion event, not here.

    Args:
        data: Cart, buyer and redirect URLs.

    Returns:
        CheckoutSessionResponse: Contains checkout_url for redirect.
    """
    service = CheckoutService()
    session = await service.create_checkout_session(
        items=[item.model_dump() for item in data.items],
        actor_id=data.actor_id,
        success_url=str(data.success_url) if data.success_url else None,
        cancel_url=str(data.cancel_url) if data.cancel_url else None,
        customer_email=data.customer_email,
        attempt_id=data.attempt_id,
    )

    return CheckoutSessionResponse(
        checkout_url=session.checkout_url,
        session_id=session.session_id,
        idempotency_key=session.idempotency_key,
        totals=_totals_response(session.totals),
    )


# Orders router
orders_router = APIRouter(prefix="/orders", tags=["orders"])


def _order_response(row: dict[str, Any]) -> OrderResponse:
    snapshot = OrderSnapshot.from_row(row)
    return OrderResponse(
        id=snapshot.order_id,
        order_number=snapshot.order_number,
        tenant_id=row.get("tenant_id"),
        status=snapshot.status,
        currency=snapshot.currency,
        items=[
            {
                "id": item.item_id,
                "product_id": item.product_id,
                "name_snapshot": item.name,
                "quantity": item.quantity,
                "unit_amount_cents": item.unit_amount_cents,
                "amount_total_cents": item.amount_total_cents,
            }
            for item in snapshot.items
        ],
        total_cents=snapshot.total_cents,
        refunded_total_cents=snapshot.refunded_total_cents,
        last_refund_at=snapshot.last_refund_at,
        created_at=row.get("created_at"),
    )


@orders_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
    description="Returns an order with its refund bookkeeping.",
)
async def get_order(order_id: str) -> OrderResponse:
    """Get an order by ID.

    Args:
        order_id: The order's UUID.

    Returns:
        OrderResponse: The order.

    Raises:
        NotFoundError: If the order does not exist.
    """
    store = OrderStore()
    order = await store.find_order(order_id)
    if not order:
        raise NotFoundError(f"Order {order_id} not found")
    return _order_response(order)
