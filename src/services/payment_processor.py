"""Stripe calls used by checkout and refunds.

All requests are made on behalf of the seller's connected account and carry
an idempotency key; Stripe is what actually guarantees one session or refund
per key. ``stripe.StripeError`` never leaves this module: it is re-raised as
``ProcessorError`` with Stripe's code and request id preserved.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping

import stripe

from src.core.errors import ProcessorError
from src.core.stripe import get_stripe, is_stripe_configured

logger = logging.getLogger(__name__)

# Stripe rejects metadata values longer than this
MAX_METADATA_VALUE_LENGTH = 500


@dataclass(frozen=True)
class CheckoutSessionResult:
    """Identifiers of a created Checkout Session."""

    session_id: str
    redirect_url: str


@dataclass(frozen=True)
class ProcessorRefund:
    """Refund as reported back by Stripe."""

    refund_id: str
    status: str | None
    amount_cents: int


def build_metadata(values: Mapping[str, Any]) -> dict[str, str]:
    """Turn values into Stripe metadata: strings only, ``None`` dropped, length capped."""
    metadata: dict[str, str] = {}
    for key, value in values.items():
        if value is None:
            continue
        text = str(value)
        if len(text) > MAX_METADATA_VALUE_LENGTH:
            logger.warning("Truncating Stripe metadata value for %s (%d chars)", key, len(text))
            text = text[:MAX_METADATA_VALUE_LENGTH]
        metadata[key] = text
    return metadata


def _processor_error(operation: str, error: stripe.StripeError) -> ProcessorError:
    code = getattr(error, "code", None)
    request_id = getattr(error, "request_id", None)
    logger.error(
        "Stripe error during %s: code=%s request_id=%s message=%s",
        operation,
        code,
        request_id,
        getattr(error, "user_message", None) or str(error),
    )
    return ProcessorError(
        getattr(error, "user_message", None) or str(error) or "Payment processor request failed",
        processor_code=code,
        request_id=request_id,
        http_status=getattr(error, "http_status", None),
    )


class PaymentProcessor:
    """Thin wrapper around the Stripe SDK for Connect accounts."""

    def __init__(self, stripe_module: Any = None) -> None:
        """Initialize payment processor with the configured Stripe module."""
        self.stripe = stripe_module or get_stripe()

    def _require_configured(self) -> None:
        if not is_stripe_configured():
            raise ProcessorError("Stripe is not configured. Please set STRIPE_SECRET_KEY environment variable.")

    async def create_checkout_session(
        self,
        line_items: list[dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: Mapping[str, Any],
        idempotency_key: str,
        account_id: str,
        **options: Any,
    ) -> CheckoutSessionResult:
        """Create a Checkout Session on the seller's account.

        Args:
            line_items: Stripe ``line_items`` with inline ``price_data``.
            success_url: Redirect after payment.
            cancel_url: Redirect when the buyer backs out.
            metadata: Values echoed back in webhooks.
            idempotency_key: Deduplicates retries of the same attempt.
            account_id: Seller's connected account id.
            **options: Further session parameters (mode, tax, shipping...).

        Returns:
            CheckoutSessionResult: Session id and hosted checkout URL.

        Raises:
            ProcessorError: If Stripe rejects or cannot be reached.
        """
        self._require_configured()
        params: dict[str, Any] = {
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": build_metadata(metadata),
            **options,
        }
        try:
            session = self.stripe.checkout.Session.create(
                **params,
                stripe_account=account_id,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise _processor_error("checkout session creation", e) from e

        if not session.url:
            raise ProcessorError("Stripe did not return a checkout URL")
        return CheckoutSessionResult(session_id=session.id, redirect_url=session.url)

    async def create_refund(
        self,
        amount_cents: int,
        payment_intent_id: str | None,
        charge_id: str | None,
        metadata: Mapping[str, Any],
        idempotency_key: str,
        account_id: str,
        reason: str | None = None,
    ) -> ProcessorRefund:
        """Refund part of a payment on the seller's account.

        The payment intent is used when present, the charge otherwise.

        Raises:
            ProcessorError: If Stripe rejects or cannot be reached.
        """
        self._require_configured()
        params: dict[str, Any] = {
            "amount": amount_cents,
            "metadata": build_metadata(metadata),
        }
        if payment_intent_id:
            params["payment_intent"] = payment_intent_id
        else:
            params["charge"] = charge_id
        if reason:
            params["reason"] = reason

        try:
            refund = self.stripe.Refund.create(
                **params,
                stripe_account=account_id,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise _processor_error("refund creation", e) from e

        return ProcessorRefund(
            refund_id=refund.id,
            status=getattr(refund, "status", None),
            amount_cents=int(getattr(refund, "amount", None) or amount_cents),
        )

    async def is_tax_ready(self, account_id: str) -> bool:
        """Whether automatic tax can be enabled for the seller's account.

        Requires active tax settings and at least one registration. Any
        Stripe failure reads as "not ready"; checkout continues without tax.
        """
        try:
            settings = self.stripe.tax.Settings.retrieve(stripe_account=account_id)
            if getattr(settings, "status", None) != "active":
                return False
            registrations = self.stripe.tax.Registration.list(
                limit=1,
                status="active",
                stripe_account=account_id,
            )
            return bool(registrations.data)
        except stripe.StripeError as e:
            logger.warning("Tax readiness check failed for %s: %s", account_id, str(e))
            return False
