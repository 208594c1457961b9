"""Order and refund persistence on Supabase."""

import logging
from typing import Any, Sequence

import httpx
from postgrest.exceptions import APIError as PostgrestAPIError

from src.core.errors import StoreError
from src.core.supabase import get_supabase_client
from src.models.order import Order, OrderRefundUpdate, OrderStatus
from src.models.refund import RefundRecord, RefundRecordCreate

logger = logging.getLogger(__name__)

ORDERS_TABLE = "orders"
REFUNDS_TABLE = "refunds"

_STORE_ERRORS = (PostgrestAPIError, httpx.HTTPError)


class OrderStore:
    """Reads orders and their refund audit records, appends new records.

    Supabase failures are wrapped in ``StoreError`` here so callers only
    deal with the settlement error taxonomy.
    """

    def __init__(self, client: Any = None) -> None:
        """Initialize order store with Supabase client."""
        self.client = client or get_supabase_client()

    async def find_order(self, order_id: str) -> Order | None:
        """Get an order by ID.

        Args:
            order_id: The order's UUID.

        Returns:
            Order | None: The order row or None if not found.
        """
        try:
            response = (
                self.client.table(ORDERS_TABLE)
                .select("*")
                .eq("id", order_id)
                .maybe_single()
                .execute()
            )
        except _STORE_ERRORS as e:
            raise StoreError("Failed to load order", operation="find_order") from e

        return response.data if response and response.data else None

    async def list_refunds_for_order(
        self,
        order_id: str,
        statuses: Sequence[str] | None = None,
    ) -> list[RefundRecord]:
        """List refund records of an order, oldest first.

        Args:
            order_id: The order's UUID.
            statuses: Only return records in these statuses. All when None.

        Returns:
            list[RefundRecord]: Matching refund records.
        """
        query = self.client.table(REFUNDS_TABLE).select("*").eq("order_id", order_id)
        if statuses:
            query = query.in_("status", list(statuses))

        try:
            response = query.order("created_at").execute()
        except _STORE_ERRORS as e:
            raise StoreError("Failed to load refunds", operation="list_refunds_for_order") from e

        return response.data or []

    async def create_refund_record(self, data: RefundRecordCreate) -> RefundRecord:
        """Append a refund audit record.

        Args:
            data: Record fields.

        Returns:
            RefundRecord: The inserted row.
        """
        try:
            response = self.client.table(REFUNDS_TABLE).insert(dict(data)).execute()
        except _STORE_ERRORS as e:
            raise StoreError("Failed to record refund", operation="create_refund_record") from e

        if not response.data:
            raise StoreError("Refund insert returned no row", operation="create_refund_record")
        return response.data[0]

    async def compare_and_set_refunded_total(
        self,
        order_id: str,
        expected_cents: int | None,
        new_cents: int,
        status: OrderStatus | None = None,
    ) -> bool:
        """Set ``refunded_total_cents`` only if it still holds ``expected_cents``.

        Args:
            order_id: The order's UUID.
            expected_cents: Value read earlier; None matches a NULL column.
            new_cents: Value to write.
            status: Order status to write along with the total.

        Returns:
            bool: True if the row was updated, False if another writer got there first.
        """
        update: dict[str, Any] = {"refunded_total_cents": new_cents}
        if status:
            update["status"] = status

        query = self.client.table(ORDERS_TABLE).update(update).eq("id", order_id)
        if expected_cents is None:
            query = query.is_("refunded_total_cents", "null")
        else:
            query = query.eq("refunded_total_cents", expected_cents)

        try:
            response = query.execute()
        except _STORE_ERRORS as e:
            raise StoreError("Failed to update refunded total", operation="compare_and_set_refunded_total") from e

        return bool(response.data)

    async def update_order_refund_state(self, order_id: str, update: OrderRefundUpdate) -> Order | None:
        """Write recomputed refund bookkeeping to an order.

        Args:
            order_id: The order's UUID.
            update: Fields to write.

        Returns:
            Order | None: The updated row, or None if the order vanished.
        """
        try:
            response = (
                self.client.table(ORDERS_TABLE)
                .update(dict(update))
                .eq("id", order_id)
                .execute()
            )
        except _STORE_ERRORS as e:
            raise StoreError("Failed to update order", operation="update_order_refund_state") from e

        if response.data:
            logger.info("Order %s refund state updated", order_id)
            return response.data[0]
        return None
