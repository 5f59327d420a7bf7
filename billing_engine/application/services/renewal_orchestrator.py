"""Executes one renewal attempt for one subscription."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ...domain import state_machine
from ...domain.billing_period import period_bounds
from ...domain.clock import Clock
from ...domain.dunning import FailureOutcome, apply_payment_failure
from ...domain.errors import NotDue, SubscriptionNotFound
from ...domain.models import (
    PaymentOutcome,
    PaymentRecord,
    Subscription,
    SubscriptionStatus,
)
from ...domain.ports.notifications import NotificationDispatcher
from ...domain.ports.payments import ChargeResult, PaymentGateway
from ...domain.ports.persistence import BillingStore
from ...domain.retry_policy import RetryPolicy
from .gateway_sync import CANCEL, GatewaySync
from .leasing import SubscriptionLeases
from .notifications import notify_async

logger = logging.getLogger(__name__)

S = SubscriptionStatus

SYSTEM_ACTOR = "system"

_Events = List[Tuple[str, Dict[str, Any]]]


class RenewalResult(str, Enum):
    RENEWED = "renewed"
    TRIAL_CONVERTED = "trial_converted"
    PAYMENT_FAILED = "payment_failed"
    # Retry ceiling reached.
    CANCELLED = "cancelled"
    # Scheduled cancellation took effect at the period boundary.
    ENDED = "ended"


@dataclass(slots=True)
class RenewalOutcome:
    subscription: Subscription
    result: RenewalResult
    payment: Optional[PaymentRecord] = None
    retry_at: Optional[datetime] = None


class RenewalOrchestrator:
    """
    Charges a due subscription and applies the outcome atomically.

    The subscription row, its history entries and the payment record of one
    attempt are written in a single store transaction while the lease is
    held; notifications go out only after that write committed.
    """

    def __init__(
        self,
        store: BillingStore,
        gateway: PaymentGateway,
        notifier: NotificationDispatcher,
        leases: SubscriptionLeases,
        retry_policy: RetryPolicy,
        clock: Clock,
        gateway_timeout: float = 30.0,
        gateway_sync: Optional[GatewaySync] = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._notifier = notifier
        self._leases = leases
        self._retry_policy = retry_policy
        self._clock = clock
        self._gateway_timeout = gateway_timeout
        self._gateway_sync = gateway_sync

    async def attempt_renewal(self, subscription_id: str) -> RenewalOutcome:
        """
        Renew ``subscription_id`` if it is due.

        Raises:
            SubscriptionNotFound: If the subscription does not exist
            NotDue: If it is not billable or its next charge lies in the future
            LeaseUnavailable: If another worker is processing it
            StoreFailure: If the outcome could not be persisted
        """
        subscription = self._load(subscription_id)
        self._ensure_due(subscription, self._clock())

        # Filled only after the outcome committed.
        events: _Events = []
        try:
            with self._leases.hold(subscription_id) as owner:
                subscription = self._load(subscription_id)
                self._ensure_due(subscription, self._clock())

                if subscription.cancel_at_period_end:
                    outcome = self._end_at_period_boundary(subscription, owner, events)
                else:
                    charge = await self._collect(subscription)
                    if charge is None or charge.succeeded:
                        outcome = self._apply_success(subscription, charge, owner, events)
                    else:
                        outcome = self._apply_failure(subscription, charge, owner, events)

                if outcome.result is RenewalResult.CANCELLED and self._gateway_sync is not None:
                    await asyncio.to_thread(self._gateway_sync.propagate, subscription, CANCEL, owner)
        finally:
            for event_type, payload in events:
                await notify_async(self._notifier, event_type, subscription_id, payload)
        return outcome

    def _load(self, subscription_id: str) -> Subscription:
        subscription = self._store.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)
        return subscription

    @staticmethod
    def _ensure_due(subscription: Subscription, now: datetime) -> None:
        if not subscription.is_renewal_candidate():
            raise NotDue(subscription.id, f"status is {subscription.status.value}")
        if subscription.next_charge_at is None or subscription.next_charge_at > now:
            raise NotDue(subscription.id, f"next charge at {subscription.next_charge_at}")

    async def _collect(self, subscription: Subscription) -> Optional[ChargeResult]:
        """Charge the gateway; ``None`` means the subscription is billed locally only."""
        subscription_ref = subscription.gateway_subscription_ref
        if not subscription_ref:
            return None
        customer = self._store.get_customer(subscription.customer_id)
        customer_ref = customer.gateway_customer_ref if customer else None
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self._gateway.charge,
                    customer_ref,
                    subscription.amount,
                    subscription.currency,
                    subscription_ref,
                ),
                timeout=self._gateway_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Gateway charge for subscription %s timed out after %ss",
                subscription.id,
                self._gateway_timeout,
            )
            return ChargeResult.failure(f"Gateway timed out after {self._gateway_timeout}s")
        except Exception as exc:
            logger.exception("Gateway charge for subscription %s raised", subscription.id)
            return ChargeResult.failure(f"Gateway error: {exc}")

    def _apply_success(
        self,
        subscription: Subscription,
        charge: Optional[ChargeResult],
        owner: str,
        events: _Events,
    ) -> RenewalOutcome:
        now = self._clock()
        payment = None
        # A payment webhook may already have recorded this settlement.
        if charge is not None and not self._store.has_payment(
            subscription.id, [charge.gateway_reference], PaymentOutcome.SUCCEEDED
        ):
            payment = PaymentRecord(
                subscription_id=subscription.id,
                amount=subscription.amount,
                currency=subscription.currency,
                outcome=PaymentOutcome.SUCCEEDED,
                gateway_reference=charge.gateway_reference,
                created_at=now,
            )

        previous = subscription.status
        subscription.consecutive_failure_count = 0
        subscription.period_index += 1
        start, end = period_bounds(
            subscription.billing_anchor,
            subscription.cadence_unit,
            subscription.cadence_count,
            subscription.period_index,
        )
        subscription.current_period_start = start
        subscription.current_period_end = end
        subscription.next_charge_at = end

        note = f"Subscription renewed for period {start.isoformat()} to {end.isoformat()}"
        if previous is S.TRIALING:
            result = RenewalResult.TRIAL_CONVERTED
            entry = state_machine.apply_transition(
                subscription, S.ACTIVE, action="trial_converted", note=note, actor=SYSTEM_ACTOR, at=now
            )
        elif previous is S.PAST_DUE:
            result = RenewalResult.RENEWED
            entry = state_machine.apply_transition(
                subscription, S.ACTIVE, action="renewed", note=note, actor=SYSTEM_ACTOR, at=now
            )
        else:
            result = RenewalResult.RENEWED
            entry = state_machine.record_note(subscription, action="renewed", note=note, actor=SYSTEM_ACTOR, at=now)

        self._store.save_subscription(
            subscription,
            lease_owner=owner,
            history=[entry],
            payments=[payment] if payment else [],
        )
        logger.info("Renewed subscription %s until %s", subscription.id, end.isoformat())

        events.append(
            (
                "renewed",
                {
                    "period_start": start.isoformat(),
                    "period_end": end.isoformat(),
                    "trial_converted": result is RenewalResult.TRIAL_CONVERTED,
                    "amount": str(payment.amount) if payment else None,
                    "currency": payment.currency if payment else None,
                    "payment_reference": payment.gateway_reference if payment else None,
                },
            )
        )
        return RenewalOutcome(subscription=subscription, result=result, payment=payment)

    def _apply_failure(
        self,
        subscription: Subscription,
        charge: ChargeResult,
        owner: str,
        events: _Events,
    ) -> RenewalOutcome:
        now = self._clock()
        reason = charge.failure_reason or "Payment failed"
        payment = PaymentRecord(
            subscription_id=subscription.id,
            amount=subscription.amount,
            currency=subscription.currency,
            outcome=PaymentOutcome.FAILED,
            gateway_reference=charge.gateway_reference,
            created_at=now,
            failure_reason=reason,
        )
        failure = apply_payment_failure(
            subscription, reason=reason, policy=self._retry_policy, actor=SYSTEM_ACTOR, at=now
        )
        result = RenewalResult.CANCELLED if failure.terminated else RenewalResult.PAYMENT_FAILED

        self._store.save_subscription(subscription, lease_owner=owner, history=failure.history, payments=[payment])
        logger.info(
            "Renewal payment failed for subscription %s (%s/%s): %s",
            subscription.id,
            subscription.consecutive_failure_count,
            self._retry_policy.ceiling,
            reason,
        )

        events.extend(payment_failure_events(subscription, reason, failure, self._retry_policy.ceiling))
        return RenewalOutcome(subscription=subscription, result=result, payment=payment, retry_at=failure.retry_at)

    def _end_at_period_boundary(self, subscription: Subscription, owner: str, events: _Events) -> RenewalOutcome:
        now = self._clock()
        reason = subscription.cancellation_reason or "Cancelled at period end"
        entry = state_machine.mark_cancelled(
            subscription,
            reason=reason,
            actor=SYSTEM_ACTOR,
            at=now,
            cancelled_at=subscription.current_period_end,
        )
        self._store.save_subscription(subscription, lease_owner=owner, history=[entry])
        logger.info("Subscription %s reached its scheduled cancellation", subscription.id)
        events.append(("cancelled", {"reason": reason}))
        return RenewalOutcome(subscription=subscription, result=RenewalResult.ENDED)


def payment_failure_events(
    subscription: Subscription,
    reason: str,
    failure: FailureOutcome,
    ceiling: int,
) -> _Events:
    """``payment_failed``, followed by ``cancelled`` when the ceiling was reached."""
    events: _Events = [
        (
            "payment_failed",
            {
                "reason": reason,
                "failure_count": subscription.consecutive_failure_count,
                "ceiling": ceiling,
                "final_attempt": failure.terminated,
                "retry_at": failure.retry_at.isoformat() if failure.retry_at else None,
            },
        )
    ]
    if failure.terminated:
        events.append(("cancelled", {"reason": subscription.cancellation_reason}))
    return events
