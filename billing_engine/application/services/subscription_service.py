"""Administrative lifecycle operations on subscriptions."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterator, List, Optional, Tuple
from uuid import uuid4

from ...domain import state_machine
from ...domain.billing_period import next_boundary
from ...domain.clock import Clock
from ...domain.errors import (
    CustomerNotFound,
    InvalidSpec,
    InvalidState,
    LeaseUnavailable,
    SubscriptionNotFound,
)
from ...domain.models import (
    CadenceUnit,
    HistoryEntry,
    PaymentOutcome,
    PaymentRecord,
    Subscription,
    SubscriptionSpec,
    SubscriptionStatus,
)
from ...domain.ports.notifications import NotificationDispatcher
from ...domain.ports.persistence import BillingStore
from .gateway_sync import CANCEL, CANCEL_AT_PERIOD_END, PAUSE, RESUME, GatewaySync
from .leasing import SubscriptionLeases
from .notifications import notify

logger = logging.getLogger(__name__)

S = SubscriptionStatus


class SubscriptionService:
    """Creates subscriptions and applies pause, resume and cancel requests."""

    def __init__(
        self,
        store: BillingStore,
        gateway_sync: GatewaySync,
        notifier: NotificationDispatcher,
        leases: SubscriptionLeases,
        clock: Clock,
    ) -> None:
        self._store = store
        self._gateway_sync = gateway_sync
        self._notifier = notifier
        self._leases = leases
        self._clock = clock

    # ------------------------------------------------------------------ queries

    def get(self, subscription_id: str) -> Subscription:
        subscription = self._store.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)
        return subscription

    def list_for_customer(self, customer_id: str) -> List[Subscription]:
        if self._store.get_customer(customer_id) is None:
            raise CustomerNotFound(customer_id)
        return self._store.list_subscriptions_for_customer(customer_id)

    def get_history(self, subscription_id: str, limit: int = 50) -> List[HistoryEntry]:
        self.get(subscription_id)
        return self._store.get_history(subscription_id, limit)

    def get_payments(self, subscription_id: str, limit: int = 50) -> List[PaymentRecord]:
        self.get(subscription_id)
        return self._store.get_payments(subscription_id, limit)

    # ---------------------------------------------------------------- commands

    def create(self, spec: SubscriptionSpec, actor: str = "admin") -> Subscription:
        """
        Validate ``spec`` and persist a new subscription with its first history entry.

        Args:
            spec: Creation input
            actor: Who requested the creation

        Returns:
            The persisted Subscription

        Raises:
            InvalidSpec: If the input is malformed or the customer is unknown
        """
        amount = _validate_amount(spec.amount)
        cadence_unit = _validate_unit(spec.cadence_unit)
        cadence_count = _validate_count(spec.cadence_count)
        currency = _validate_currency(spec.currency)
        product_label = (spec.product_label or "").strip()
        if not product_label:
            raise InvalidSpec("Product label must not be empty.")
        trial_ends_at = _as_utc(spec.trial_ends_at)
        if spec.collect_initial_payment and trial_ends_at is not None:
            raise InvalidSpec("A trial and an initial payment cannot be combined.")
        if self._store.get_customer(spec.customer_id) is None:
            raise InvalidSpec(f"Customer {spec.customer_id} does not exist.")

        now = self._clock()
        status = state_machine.initial_status(
            trial_ends_at,
            now,
            collect_initial_payment=spec.collect_initial_payment,
        )
        if status is S.TRIALING:
            # The trial is period 0; the first paid period starts at its end.
            anchor, period_index, period_end = trial_ends_at, 0, trial_ends_at
        else:
            anchor, period_index = now, 1
            period_end = next_boundary(now, cadence_unit, cadence_count)

        subscription = Subscription(
            id=uuid4().hex,
            customer_id=spec.customer_id,
            status=status,
            product_label=product_label,
            amount=amount,
            currency=currency,
            cadence_unit=cadence_unit,
            cadence_count=cadence_count,
            billing_anchor=anchor,
            period_index=period_index,
            current_period_start=now,
            current_period_end=period_end,
            next_charge_at=period_end,
            created_at=now,
            updated_at=now,
            trial_ends_at=trial_ends_at,
            gateway_subscription_ref=spec.gateway_subscription_ref or None,
        )

        note = f"Subscription created for {product_label}"
        if status is S.TRIALING:
            note += f"; trial until {trial_ends_at.isoformat()}"
        elif status is S.INCOMPLETE:
            note += "; awaiting initial payment"
        entry = HistoryEntry(
            subscription_id=subscription.id,
            action="created",
            note=note,
            actor=actor,
            created_at=now,
        )
        self._store.insert_subscription(subscription, [entry])
        logger.info("Created subscription %s for customer %s (%s)", subscription.id, spec.customer_id, status.value)

        notify(
            self._notifier,
            "created",
            subscription.id,
            {
                "customer_id": subscription.customer_id,
                "product_label": product_label,
                "amount": str(amount),
                "currency": currency,
                "status": status.value,
                "trial_ends_at": trial_ends_at.isoformat() if status is S.TRIALING else None,
            },
        )
        return subscription

    def pause(self, subscription_id: str, reason: str = "", actor: str = "admin") -> Subscription:
        with self._locked(subscription_id) as (subscription, owner):
            if not state_machine.can_pause(subscription):
                raise InvalidState("Only active or trialing subscriptions can be paused.")
            now = self._clock()
            previous = subscription.status
            note = "Subscription paused."
            if reason:
                note += f" Reason: {reason}"
            entry = state_machine.apply_transition(
                subscription, S.PAUSED, action="paused", note=note, actor=actor, at=now
            )
            subscription.pre_pause_status = previous
            self._store.save_subscription(subscription, lease_owner=owner, history=[entry])
            self._gateway_sync.propagate(subscription, PAUSE, owner)

        logger.info("Paused subscription %s (was %s)", subscription_id, previous.value)
        notify(self._notifier, "paused", subscription_id, {"reason": reason or None})
        return subscription

    def resume(self, subscription_id: str, actor: str = "admin") -> Subscription:
        with self._locked(subscription_id) as (subscription, owner):
            if not state_machine.can_resume(subscription):
                raise InvalidState("Only paused subscriptions can be resumed.")
            now = self._clock()
            target = subscription.pre_pause_status or S.ACTIVE
            entry = state_machine.apply_transition(
                subscription, target, action="resumed", note="Subscription resumed.", actor=actor, at=now
            )
            subscription.pre_pause_status = None
            self._store.save_subscription(subscription, lease_owner=owner, history=[entry])
            self._gateway_sync.propagate(subscription, RESUME, owner)

        logger.info("Resumed subscription %s as %s", subscription_id, subscription.status.value)
        notify(self._notifier, "resumed", subscription_id, {"status": subscription.status.value})
        return subscription

    def cancel(
        self,
        subscription_id: str,
        reason: str = "",
        immediate: bool = False,
        actor: str = "admin",
    ) -> Subscription:
        """Cancel now, or schedule the cancellation for the end of the current period."""
        with self._locked(subscription_id) as (subscription, owner):
            if not state_machine.can_cancel(subscription):
                raise InvalidState(f"Subscription is already {subscription.status.value}.")
            now = self._clock()
            if immediate:
                entry = state_machine.mark_cancelled(subscription, reason=reason, actor=actor, at=now)
                subscription.consecutive_failure_count = 0
                action = CANCEL
                payload = {"reason": reason or None}
            else:
                if subscription.status not in state_machine.SCHEDULABLE_CANCEL_STATUSES:
                    raise InvalidState(
                        f"Cannot schedule cancellation from {subscription.status.value}; cancel immediately instead."
                    )
                if subscription.cancel_at_period_end:
                    raise InvalidState("Cancellation is already scheduled.")
                subscription.cancel_at_period_end = True
                subscription.cancellation_reason = reason or None
                effective_at = subscription.current_period_end
                entry = state_machine.record_note(
                    subscription,
                    action="cancellation_scheduled",
                    note=f"Subscription set to cancel at period end ({effective_at.isoformat()}).",
                    actor=actor,
                    at=now,
                )
                action = CANCEL_AT_PERIOD_END
                payload = {"reason": reason or None, "scheduled": True, "effective_at": effective_at.isoformat()}
            self._store.save_subscription(subscription, lease_owner=owner, history=[entry])
            self._gateway_sync.propagate(subscription, action, owner)

        logger.info("Cancelled subscription %s (immediate=%s)", subscription_id, immediate)
        notify(self._notifier, "cancelled", subscription_id, payload)
        return subscription

    def confirm_initial_payment(
        self,
        subscription_id: str,
        succeeded: bool,
        gateway_reference: Optional[str] = None,
        failure_reason: Optional[str] = None,
        actor: str = "system",
    ) -> Subscription:
        """Settle the first charge of an ``incomplete`` subscription."""
        with self._locked(subscription_id) as (subscription, owner):
            if subscription.status is not S.INCOMPLETE:
                raise InvalidState("Initial payment can only be confirmed for incomplete subscriptions.")
            now = self._clock()
            payment = PaymentRecord(
                subscription_id=subscription.id,
                amount=subscription.amount,
                currency=subscription.currency,
                outcome=PaymentOutcome.SUCCEEDED if succeeded else PaymentOutcome.FAILED,
                gateway_reference=gateway_reference,
                created_at=now,
                failure_reason=None if succeeded else (failure_reason or "Initial payment failed"),
            )
            if succeeded:
                entry = state_machine.apply_transition(
                    subscription,
                    S.ACTIVE,
                    action="activated",
                    note="Initial payment received; subscription activated.",
                    actor=actor,
                    at=now,
                )
                event, payload = "payment_succeeded", {"amount": str(payment.amount), "currency": payment.currency}
            else:
                entry = state_machine.mark_cancelled(
                    subscription,
                    reason=f"Initial payment failed: {payment.failure_reason}",
                    actor=actor,
                    at=now,
                )
                event, payload = "cancelled", {"reason": subscription.cancellation_reason}
            self._store.save_subscription(subscription, lease_owner=owner, history=[entry], payments=[payment])

        logger.info("Initial payment for subscription %s settled (succeeded=%s)", subscription_id, succeeded)
        notify(self._notifier, event, subscription_id, payload)
        return subscription

    # ------------------------------------------------------------- housekeeping

    def expire_incomplete(self, max_age: timedelta, limit: int = 50) -> int:
        """Move ``incomplete`` subscriptions older than ``max_age`` to ``incomplete_expired``."""
        cutoff = self._clock() - max_age
        expired = 0
        for candidate in self._store.list_incomplete_created_before(cutoff, limit):
            try:
                with self._leases.hold(candidate.id) as owner:
                    subscription = self._store.get_subscription(candidate.id)
                    if subscription is None or subscription.status is not S.INCOMPLETE:
                        continue
                    entry = state_machine.apply_transition(
                        subscription,
                        S.INCOMPLETE_EXPIRED,
                        action="incomplete_expired",
                        note="Initial payment was not completed in time.",
                        actor="system",
                        at=self._clock(),
                    )
                    self._store.save_subscription(subscription, lease_owner=owner, history=[entry])
            except LeaseUnavailable:
                continue
            expired += 1
            notify(
                self._notifier,
                "incomplete_expired",
                subscription.id,
                {"product_label": subscription.product_label},
            )
        if expired:
            logger.info("Expired %s incomplete subscriptions", expired)
        return expired

    def send_trial_ending_reminders(self, lead: timedelta, limit: int = 50) -> int:
        """Notify once for every trial ending within ``lead`` from now."""
        horizon = self._clock() + lead
        sent = 0
        for candidate in self._store.list_trials_ending(horizon, limit):
            try:
                with self._leases.hold(candidate.id) as owner:
                    subscription = self._store.get_subscription(candidate.id)
                    if (
                        subscription is None
                        or subscription.status is not S.TRIALING
                        or subscription.trial_reminder_sent_at is not None
                    ):
                        continue
                    now = self._clock()
                    entry = state_machine.record_note(
                        subscription,
                        action="trial_ending",
                        note=f"Trial ends at {subscription.trial_ends_at.isoformat()}.",
                        actor="system",
                        at=now,
                    )
                    subscription.trial_reminder_sent_at = now
                    self._store.save_subscription(subscription, lease_owner=owner, history=[entry])
            except LeaseUnavailable:
                continue
            sent += 1
            notify(
                self._notifier,
                "trial_ending",
                subscription.id,
                {
                    "product_label": subscription.product_label,
                    "trial_ends_at": subscription.trial_ends_at.isoformat(),
                },
            )
        return sent

    def reconcile_gateway(self, limit: int = 50) -> int:
        return self._gateway_sync.reconcile(limit)

    # ---------------------------------------------------------------- helpers

    @contextmanager
    def _locked(self, subscription_id: str) -> Iterator[Tuple[Subscription, str]]:
        self.get(subscription_id)
        with self._leases.hold(subscription_id) as owner:
            yield self.get(subscription_id), owner


def _validate_amount(value) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidSpec(f"Invalid amount {value!r}.") from None
    if not amount.is_finite() or amount <= 0:
        raise InvalidSpec("Amount must be a positive number.")
    return amount


def _validate_unit(value) -> CadenceUnit:
    try:
        return CadenceUnit(value)
    except ValueError:
        raise InvalidSpec(f"Unknown cadence unit {value!r}.") from None


def _validate_count(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidSpec("Cadence count must be a positive integer.")
    return value


def _validate_currency(value) -> str:
    if not isinstance(value, str) or len(value) != 3 or not value.isalpha():
        raise InvalidSpec(f"Invalid currency code {value!r}.")
    return value.upper()


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
