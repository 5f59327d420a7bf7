"""Stripe implementation of the payment gateway port."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe

from ...domain.errors import GatewayFailure
from ...domain.ports.payments import ChargeResult, PaymentGateway

logger = logging.getLogger(__name__)


class StripePaymentGateway(PaymentGateway):
    """Collects renewals by settling the latest invoice of a Stripe subscription."""

    def __init__(self, secret_key: Optional[str] = None) -> None:
        if secret_key:
            stripe.api_key = secret_key

    def is_configured(self) -> bool:
        return bool(stripe.api_key)

    def charge(
        self,
        customer_ref: Optional[str],
        amount: Decimal,
        currency: str,
        subscription_ref: str,
    ) -> ChargeResult:
        """
        Settle the latest invoice of ``subscription_ref``.

        An already paid invoice counts as a success; an open invoice is paid
        against the customer's default payment method. Declines and API
        errors are returned as failed results, never raised.
        """
        if not self.is_configured():
            return ChargeResult.failure("Stripe not configured. Please set STRIPE_SECRET_KEY.")

        try:
            subscription = stripe.Subscription.retrieve(subscription_ref)
            invoice_id = self._invoice_id(subscription.get("latest_invoice"))
            if not invoice_id:
                return ChargeResult.failure("No invoice found for subscription")

            invoice = stripe.Invoice.retrieve(invoice_id)
            if invoice["status"] == "open":
                invoice = stripe.Invoice.pay(invoice_id)

            if invoice["status"] != "paid":
                return ChargeResult.failure("Payment could not be processed", gateway_reference=invoice_id)
        except stripe.CardError as exc:
            reason = exc.user_message or str(exc)
            logger.info("Stripe declined renewal for %s: %s", subscription_ref, reason)
            return ChargeResult.failure(reason)
        except stripe.StripeError as exc:
            logger.warning("Stripe renewal request for %s failed: %s", subscription_ref, exc)
            return ChargeResult.failure(f"Stripe error: {exc}")

        self._check_settled_amount(invoice, amount, currency, subscription_ref)
        reference = invoice.get("payment_intent") or invoice_id
        if not isinstance(reference, str):
            reference = reference["id"]
        return ChargeResult.success(reference)

    def cancel_subscription(self, subscription_ref: str, immediate: bool) -> None:
        if immediate:
            self._call("cancel", stripe.Subscription.cancel, subscription_ref)
        else:
            self._call("cancel", stripe.Subscription.modify, subscription_ref, cancel_at_period_end=True)

    def pause_subscription(self, subscription_ref: str) -> None:
        self._call(
            "pause",
            stripe.Subscription.modify,
            subscription_ref,
            pause_collection={"behavior": "keep_as_draft"},
        )

    def resume_subscription(self, subscription_ref: str) -> None:
        self._call("resume", stripe.Subscription.modify, subscription_ref, pause_collection="")

    # ------------------------------------------------------------------
    def _call(self, action: str, method: Any, subscription_ref: str, **params: Any) -> None:
        if not self.is_configured():
            raise GatewayFailure(f"Stripe not configured; cannot {action} {subscription_ref}.")
        try:
            method(subscription_ref, **params)
        except stripe.StripeError as exc:
            raise GatewayFailure(f"Stripe {action} failed for {subscription_ref}: {exc}") from exc
        logger.info("Stripe subscription %s: %s propagated", subscription_ref, action)

    @staticmethod
    def _invoice_id(latest_invoice: Any) -> Optional[str]:
        if not latest_invoice:
            return None
        if isinstance(latest_invoice, str):
            return latest_invoice
        return latest_invoice["id"]

    @staticmethod
    def _check_settled_amount(
        invoice: Dict[str, Any],
        amount: Decimal,
        currency: str,
        subscription_ref: str,
    ) -> None:
        paid = invoice.get("amount_paid")
        if paid is None:
            return
        settled = Decimal(paid) / 100
        if settled != amount or str(invoice.get("currency", "")).upper() != currency.upper():
            logger.warning(
                "Stripe settled %s %s for %s, expected %s %s",
                settled,
                invoice.get("currency"),
                subscription_ref,
                amount,
                currency,
            )
