"""Catalog lookups for checkout: products and their sellers."""

import logging
from typing import Any, Iterable

import httpx
from postgrest.exceptions import APIError as PostgrestAPIError

from src.core.errors import StoreError
from src.core.supabase import get_supabase_client
from src.models.product import Product, Tenant

logger = logging.getLogger(__name__)

PRODUCT_COLUMNS = (
    "id, tenant_id, name, price, price_cents, is_archived, track_inventory, "
    "stock_quantity, max_quantity_per_order, shipping_mode, "
    "shipping_fee_cents_per_unit, shipping_flat_fee_cents, shipping_flat_fee"
)


class CatalogService:
    """Service for resolving catalog products and sellers."""

    def __init__(self, client: Any = None) -> None:
        """Initialize catalog service with Supabase client."""
        self.client = client or get_supabase_client()

    async def resolve_products(self, product_ids: Iterable[str]) -> list[Product]:
        """Get products by their IDs, archived ones included.

        Args:
            product_ids: Product UUIDs from the cart.

        Returns:
            list[Product]: Products that exist; unknown ids are simply absent.
        """
        id_strings = sorted({str(pid) for pid in product_ids})
        if not id_strings:
            return []

        try:
            response = (
                self.client.table("products")
                .select(PRODUCT_COLUMNS)
                .in_("id", id_strings)
                .execute()
            )
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise StoreError("Failed to load products", operation="resolve_products") from e

        return response.data or []

    async def get_seller(self, seller_id: str) -> Tenant | None:
        """Get a seller (tenant) by ID.

        Args:
            seller_id: The tenant's UUID.

        Returns:
            Tenant | None: The tenant or None if not found.
        """
        try:
            response = (
                self.client.table("tenants")
                .select("id, slug, name, stripe_account_id")
                .eq("id", seller_id)
                .maybe_single()
                .execute()
            )
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise StoreError("Failed to load seller", operation="get_seller") from e

        return response.data if response and response.data else None
