"""Checkout business logic service."""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from src.core.config import SettlementConfig, get_settings, get_settlement_config
from src.core.errors import SellerAccountMissing
from src.core.idempotency import derive_key
from src.services.catalog_service import CatalogService
from src.services.checkout_totals import CheckoutTotals, build_checkout_totals, normalize_cart
from src.services.payment_processor import PaymentProcessor

logger = logging.getLogger(__name__)

# Stripe's "general - tangible goods" tax code
DEFAULT_TAX_CODE = "txcd_99999999"


@dataclass(frozen=True)
class CheckoutSession:
    """A created Stripe Checkout Session and the totals behind it."""

    checkout_url: str
    session_id: str
    idempotency_key: str
    totals: CheckoutTotals


def build_line_items(totals: CheckoutTotals, account_id: str) -> list[dict[str, Any]]:
    """Stripe ``line_items`` for the product lines; shipping is added separately."""
    return [
        {
            "quantity": line.quantity,
            "price_data": {
                "currency": totals.currency,
                "unit_amount": line.unit_amount_cents,
                "tax_behavior": "exclusive",
                "product_data": {
                    "name": line.name,
                    "tax_code": DEFAULT_TAX_CODE,
                    "metadata": {
                        "product_id": line.product_id,
                        "stripe_account_id": account_id,
                    },
                },
            },
        }
        for line in totals.lines
    ]


def build_shipping_options(totals: CheckoutTotals) -> list[dict[str, Any]] | None:
    """A single fixed-amount shipping rate when the cart has flat shipping.

    Carts with calculated shipping get no fixed rate (mixing is rejected
    earlier), and free carts need none.
    """
    if totals.has_calculated_shipping or totals.shipping_cents <= 0:
        return None
    return [
        {
            "shipping_rate_data": {
                "type": "fixed_amount",
                "fixed_amount": {"amount": totals.shipping_cents, "currency": totals.currency},
                "display_name": "Shipping",
                "delivery_estimate": {
                    "minimum": {"unit": "business_day", "value": 2},
                    "maximum": {"unit": "business_day", "value": 7},
                },
                "tax_behavior": "exclusive",
            }
        }
    ]


class CheckoutService:
    """Service for pricing carts and opening Stripe Checkout Sessions."""

    def __init__(
        self,
        catalog: CatalogService | None = None,
        processor: PaymentProcessor | None = None,
        config: SettlementConfig | None = None,
    ) -> None:
        """Initialize checkout service with collaborators."""
        self.catalog = catalog or CatalogService()
        self.processor = processor or PaymentProcessor()
        self.config = config or get_settlement_config()
        self.settings = get_settings()

    async def preview_totals(self, items: Mapping[str, int] | Iterable[Mapping[str, Any]]) -> CheckoutTotals:
        """Price a cart against the catalog without contacting Stripe.

        Args:
            items: Cart entries, ``{product_id: quantity}`` or a list of
                ``{"product_id", "quantity"}``.

        Returns:
            CheckoutTotals: Computed totals.
        """
        cart = normalize_cart(items)
        products = await self.catalog.resolve_products(cart.keys())
        return build_checkout_totals(cart, products, self.config)

    async def create_checkout_session(
        self,
        items: Mapping[str, int] | Iterable[Mapping[str, Any]],
        actor_id: str,
        success_url: str | None = None,
        cancel_url: str | None = None,
        customer_email: str | None = None,
        attempt_id: str | None = None,
    ) -> CheckoutSession:
        """Price a cart and create a Stripe Checkout Session on the seller's account.

        Args:
            items: Cart entries.
            actor_id: Buyer initiating the checkout.
            success_url: Redirect after payment; defaults to the storefront.
            cancel_url: Redirect on cancel; defaults to the storefront cart.
            customer_email: Optional pre-fill email.
            attempt_id: Id of this checkout attempt. Retries of one attempt
                reuse it and get the same session back from Stripe; a new
                attempt gets a fresh id.

        Returns:
            CheckoutSession: Checkout URL, session id, key and totals.

        Raises:
            SettlementError: On an invalid cart (see ``build_checkout_totals``).
            SellerAccountMissing: If the seller has no Stripe account.
            ProcessorError: If Stripe fails.
        """
        totals = await self.preview_totals(items)

        seller = await self.catalog.get_seller(totals.seller_id)
        account_id = (seller or {}).get("stripe_account_id")
        if not account_id:
            raise SellerAccountMissing(totals.seller_id)

        attempt_id = attempt_id or str(uuid.uuid4())
        success_url = success_url or (
            f"{self.settings.app_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}"
        )
        cancel_url = cancel_url or f"{self.settings.app_url}/checkout?cancel=true"

        idempotency_key = derive_key(
            "checkout",
            actor_id,
            totals.seller_id,
            {
                "totals": totals.canonical_payload(),
                "success_url": success_url,
                "cancel_url": cancel_url,
                "customer_email": customer_email,
            },
            salt=attempt_id,
        )

        tax_ready = await self.processor.is_tax_ready(account_id)

        options: dict[str, Any] = {
            "mode": "payment",
            "client_reference_id": attempt_id,
            "automatic_tax": {"enabled": tax_ready},
            "invoice_creation": {"enabled": True},
            "payment_intent_data": {"application_fee_amount": totals.platform_fee_cents},
            "shipping_address_collection": {"allowed_countries": list(self.config.allowed_countries)},
            "billing_address_collection": "required",
        }
        if customer_email:
            options["customer_email"] = customer_email
        shipping_options = build_shipping_options(totals)
        if shipping_options:
            options["shipping_options"] = shipping_options

        result = await self.processor.create_checkout_session(
            line_items=build_line_items(totals, account_id),
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={
                "user_id": actor_id,
                "tenant_id": totals.seller_id,
                "tenant_slug": (seller or {}).get("slug"),
                "seller_stripe_account_id": account_id,
                "product_ids": ",".join(line.product_id for line in totals.lines),
                "shipping_cents": totals.shipping_cents,
            },
            idempotency_key=idempotency_key,
            account_id=account_id,
            **options,
        )

        logger.info(
            "Checkout session %s created for seller %s: subtotal=%s shipping=%s fee=%s",
            result.session_id,
            totals.seller_id,
            totals.items_subtotal_cents,
            totals.shipping_cents,
            totals.platform_fee_cents,
        )

        return CheckoutSession(
            checkout_url=result.redirect_url,
            session_id=result.session_id,
            idempotency_key=idempotency_key,
            totals=totals,
        )
