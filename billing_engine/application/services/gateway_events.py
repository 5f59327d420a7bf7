"""Applies payment-gateway webhook events to local subscriptions."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ...domain import state_machine
from ...domain.clock import Clock
from ...domain.dunning import apply_payment_failure
from ...domain.models import PaymentOutcome, PaymentRecord, Subscription, SubscriptionStatus
from ...domain.ports.notifications import NotificationDispatcher
from ...domain.ports.persistence import BillingStore
from ...domain.retry_policy import RetryPolicy
from .gateway_sync import CANCEL, GatewaySync
from .leasing import SubscriptionLeases
from .notifications import notify
from .renewal_orchestrator import payment_failure_events

logger = logging.getLogger(__name__)

S = SubscriptionStatus

GATEWAY_ACTOR = "gateway"

GATEWAY_CANCEL_REASON = "Cancelled at payment gateway"

STRIPE_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": S.ACTIVE,
    "trialing": S.TRIALING,
    "past_due": S.PAST_DUE,
    "unpaid": S.UNPAID,
    "canceled": S.CANCELLED,
    "incomplete": S.INCOMPLETE,
    "incomplete_expired": S.INCOMPLETE_EXPIRED,
    "paused": S.PAUSED,
}

_Events = List[Tuple[str, Dict[str, Any]]]
_Mutation = Callable[[Subscription, str, _Events], None]


class GatewayEventService:
    """
    Keeps local subscriptions in step with what the payment gateway reports.

    Every event is applied under the subscription lease with the same
    history and notification rules as local operations. Gateway references
    make the payment events idempotent, so redelivered webhooks and
    settlements already recorded by the renewal orchestrator are skipped.
    """

    def __init__(
        self,
        store: BillingStore,
        gateway_sync: GatewaySync,
        notifier: NotificationDispatcher,
        leases: SubscriptionLeases,
        retry_policy: RetryPolicy,
        clock: Clock,
    ) -> None:
        self._store = store
        self._gateway_sync = gateway_sync
        self._notifier = notifier
        self._leases = leases
        self._retry_policy = retry_policy
        self._clock = clock

    def handle_event(self, event_type: str, data: Mapping[str, Any]) -> Optional[Subscription]:
        """
        Dispatch one webhook event by type.

        Args:
            event_type: Gateway event name, e.g. ``invoice.payment_failed``
            data: The event's ``data.object``

        Returns:
            The updated subscription, or None when the event was ignored

        Raises:
            LeaseUnavailable: If the subscription is being processed elsewhere
            StoreFailure: If the change could not be persisted
        """
        if event_type == "invoice.payment_succeeded":
            return self.handle_payment_succeeded(data)
        if event_type == "invoice.payment_failed":
            return self.handle_payment_failed(data)
        if event_type == "customer.subscription.updated":
            return self.handle_subscription_updated(data)
        if event_type == "customer.subscription.deleted":
            return self.handle_subscription_deleted(data)
        if event_type == "customer.subscription.trial_will_end":
            return self.handle_trial_will_end(data)
        logger.debug("Ignoring unhandled gateway event %s", event_type)
        return None

    def handle_payment_succeeded(self, invoice: Mapping[str, Any]) -> Optional[Subscription]:
        def mutate(subscription: Subscription, owner: str, events: _Events) -> None:
            invoice_id = invoice.get("id")
            if self._store.has_payment(
                subscription.id, [invoice_id, invoice.get("payment_intent")], PaymentOutcome.SUCCEEDED
            ):
                logger.debug("Payment for invoice %s already recorded", invoice_id)
                return
            now = self._clock()
            amount = _from_minor_units(invoice.get("amount_paid"))
            currency = (invoice.get("currency") or subscription.currency).upper()
            payment = PaymentRecord(
                subscription_id=subscription.id,
                amount=amount,
                currency=currency,
                outcome=PaymentOutcome.SUCCEEDED,
                gateway_reference=invoice_id,
                created_at=now,
            )
            note = f"Payment of {amount} {currency} succeeded"
            if subscription.status in (S.PAST_DUE, S.UNPAID):
                subscription.consecutive_failure_count = 0
                entry = state_machine.apply_transition(
                    subscription, S.ACTIVE, action="payment_succeeded", note=note, actor=GATEWAY_ACTOR, at=now
                )
            else:
                entry = state_machine.record_note(
                    subscription, action="payment_succeeded", note=note, actor=GATEWAY_ACTOR, at=now
                )
            self._store.save_subscription(subscription, lease_owner=owner, history=[entry], payments=[payment])
            events.append(
                (
                    "payment_succeeded",
                    {"amount": str(amount), "currency": currency, "gateway_reference": invoice_id},
                )
            )

        return self._apply(_invoice_subscription_ref(invoice), "invoice.payment_succeeded", mutate)

    def handle_payment_failed(self, invoice: Mapping[str, Any]) -> Optional[Subscription]:
        def mutate(subscription: Subscription, owner: str, events: _Events) -> None:
            invoice_id = invoice.get("id")
            if self._store.has_payment(subscription.id, [invoice_id], PaymentOutcome.FAILED):
                logger.debug("Failure for invoice %s already recorded", invoice_id)
                return
            if not subscription.is_billable():
                logger.info(
                    "Ignoring payment failure for subscription %s in status %s",
                    subscription.id,
                    subscription.status.value,
                )
                return
            now = self._clock()
            reason = (invoice.get("last_payment_error") or {}).get("message") or "Payment failed"
            payment = PaymentRecord(
                subscription_id=subscription.id,
                amount=_from_minor_units(invoice.get("amount_due")),
                currency=(invoice.get("currency") or subscription.currency).upper(),
                outcome=PaymentOutcome.FAILED,
                gateway_reference=invoice_id,
                created_at=now,
                failure_reason=reason,
            )
            failure = apply_payment_failure(
                subscription, reason=reason, policy=self._retry_policy, actor=GATEWAY_ACTOR, at=now
            )
            self._store.save_subscription(
                subscription, lease_owner=owner, history=failure.history, payments=[payment]
            )
            events.extend(payment_failure_events(subscription, reason, failure, self._retry_policy.ceiling))
            if failure.terminated:
                self._gateway_sync.propagate(subscription, CANCEL, owner)

        return self._apply(_invoice_subscription_ref(invoice), "invoice.payment_failed", mutate)

    def handle_subscription_updated(self, gateway_subscription: Mapping[str, Any]) -> Optional[Subscription]:
        gateway_status = gateway_subscription.get("status")
        target = STRIPE_STATUS_MAP.get(gateway_status)
        if target is None:
            logger.warning("Unknown gateway status %r; event ignored", gateway_status)
            return None

        def mutate(subscription: Subscription, owner: str, events: _Events) -> None:
            if subscription.status is target:
                return
            now = self._clock()
            previous = subscription.status
            if target is S.CANCELLED:
                if subscription.is_terminal():
                    return
                entry = state_machine.mark_cancelled(
                    subscription, reason=GATEWAY_CANCEL_REASON, actor=GATEWAY_ACTOR, at=now
                )
                event = ("cancelled", {"reason": GATEWAY_CANCEL_REASON})
            elif not state_machine.can_transition(previous, target):
                logger.warning(
                    "Ignoring gateway status %s for subscription %s in status %s",
                    gateway_status,
                    subscription.id,
                    previous.value,
                )
                return
            else:
                entry = state_machine.apply_transition(
                    subscription,
                    target,
                    action="gateway_status_changed",
                    note=f"Gateway reported status {gateway_status}.",
                    actor=GATEWAY_ACTOR,
                    at=now,
                )
                if target is S.PAUSED:
                    subscription.pre_pause_status = previous
                    event = ("paused", {"reason": None})
                elif previous is S.PAUSED:
                    subscription.pre_pause_status = None
                    event = ("resumed", {"status": target.value})
                else:
                    event = ("status_changed", {"previous_status": previous.value, "status": target.value})
            self._store.save_subscription(subscription, lease_owner=owner, history=[entry])
            events.append(event)

        return self._apply(gateway_subscription.get("id"), "customer.subscription.updated", mutate)

    def handle_subscription_deleted(self, gateway_subscription: Mapping[str, Any]) -> Optional[Subscription]:
        def mutate(subscription: Subscription, owner: str, events: _Events) -> None:
            if subscription.is_terminal():
                return
            entry = state_machine.mark_cancelled(
                subscription, reason=GATEWAY_CANCEL_REASON, actor=GATEWAY_ACTOR, at=self._clock()
            )
            self._store.save_subscription(subscription, lease_owner=owner, history=[entry])
            events.append(("cancelled", {"reason": GATEWAY_CANCEL_REASON}))

        return self._apply(gateway_subscription.get("id"), "customer.subscription.deleted", mutate)

    def handle_trial_will_end(self, gateway_subscription: Mapping[str, Any]) -> Optional[Subscription]:
        def mutate(subscription: Subscription, owner: str, events: _Events) -> None:
            if subscription.status is not S.TRIALING or subscription.trial_reminder_sent_at is not None:
                return
            now = self._clock()
            entry = state_machine.record_note(
                subscription,
                action="trial_ending",
                note=f"Trial ends at {subscription.trial_ends_at.isoformat()}.",
                actor=GATEWAY_ACTOR,
                at=now,
            )
            subscription.trial_reminder_sent_at = now
            self._store.save_subscription(subscription, lease_owner=owner, history=[entry])
            events.append(
                (
                    "trial_ending",
                    {
                        "product_label": subscription.product_label,
                        "trial_ends_at": subscription.trial_ends_at.isoformat(),
                    },
                )
            )

        return self._apply(gateway_subscription.get("id"), "customer.subscription.trial_will_end", mutate)

    def _apply(self, gateway_ref: Optional[str], event_type: str, mutate: _Mutation) -> Optional[Subscription]:
        if not gateway_ref:
            logger.debug("Gateway event %s carries no subscription reference", event_type)
            return None
        candidate = self._store.get_subscription_by_gateway_ref(gateway_ref)
        if candidate is None:
            logger.info("Gateway event %s for unknown subscription %s ignored", event_type, gateway_ref)
            return None

        events: _Events = []
        with self._leases.hold(candidate.id) as owner:
            subscription = self._store.get_subscription(candidate.id)
            mutate(subscription, owner, events)

        if events:
            logger.info("Applied gateway event %s to subscription %s", event_type, subscription.id)
        for notification_type, payload in events:
            notify(self._notifier, notification_type, subscription.id, payload)
        return subscription


def _invoice_subscription_ref(invoice: Mapping[str, Any]) -> Optional[str]:
    reference = invoice.get("subscription")
    if reference:
        return reference
    # Newer API versions nest the reference under the invoice parent.
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def _from_minor_units(value: Any) -> Decimal:
    return Decimal(int(value or 0)) / 100
