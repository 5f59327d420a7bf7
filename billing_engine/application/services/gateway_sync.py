"""Propagates local lifecycle changes to the payment gateway.

Local state is authoritative: the transition is committed first, and a
gateway error only records ``pending_gateway_action`` so ``reconcile`` can
retry it later. Delivery to the gateway is therefore at-least-once.
"""

from __future__ import annotations

import logging

from ...domain.errors import GatewayFailure, LeaseUnavailable, StoreFailure
from ...domain.models import Subscription
from ...domain.ports.payments import PaymentGateway
from ...domain.ports.persistence import BillingStore
from .leasing import SubscriptionLeases

logger = logging.getLogger(__name__)

CANCEL = "cancel"
CANCEL_AT_PERIOD_END = "cancel_at_period_end"
PAUSE = "pause"
RESUME = "resume"


class GatewaySync:
    def __init__(self, store: BillingStore, gateway: PaymentGateway, leases: SubscriptionLeases) -> None:
        self._store = store
        self._gateway = gateway
        self._leases = leases

    def propagate(self, subscription: Subscription, action: str, lease_owner: str) -> bool:
        """Send ``action`` to the gateway; must be called while holding the lease.

        Runs after the local transition committed, so it never raises: a
        gateway error queues the action, and a failure to queue it is logged.
        """
        if not subscription.gateway_subscription_ref:
            return True
        try:
            self._send(subscription, action)
        except GatewayFailure as exc:
            logger.warning(
                "Gateway %s for subscription %s failed, queued for reconciliation: %s",
                action,
                subscription.id,
                exc,
            )
            subscription.pending_gateway_action = action
            try:
                self._store.save_subscription(subscription, lease_owner=lease_owner)
            except (StoreFailure, LeaseUnavailable) as store_exc:
                logger.error(
                    "Could not queue gateway %s for subscription %s: %s",
                    action,
                    subscription.id,
                    store_exc,
                )
            return False
        return True

    def reconcile(self, limit: int = 50) -> int:
        """Retry queued gateway actions; returns how many were delivered."""
        delivered = 0
        for candidate in self._store.list_pending_gateway_actions(limit):
            try:
                with self._leases.hold(candidate.id) as owner:
                    subscription = self._store.get_subscription(candidate.id)
                    if subscription is None or not subscription.pending_gateway_action:
                        continue
                    try:
                        self._send(subscription, subscription.pending_gateway_action)
                    except GatewayFailure as exc:
                        logger.warning("Reconciliation for subscription %s still failing: %s", subscription.id, exc)
                        continue
                    logger.info(
                        "Reconciled gateway %s for subscription %s",
                        subscription.pending_gateway_action,
                        subscription.id,
                    )
                    subscription.pending_gateway_action = None
                    self._store.save_subscription(subscription, lease_owner=owner)
                    delivered += 1
            except LeaseUnavailable:
                continue
        return delivered

    def _send(self, subscription: Subscription, action: str) -> None:
        ref = subscription.gateway_subscription_ref
        if not ref:
            return
        if action == CANCEL:
            self._gateway.cancel_subscription(ref, immediate=True)
        elif action == CANCEL_AT_PERIOD_END:
            self._gateway.cancel_subscription(ref, immediate=False)
        elif action == PAUSE:
            self._gateway.pause_subscription(ref)
        elif action == RESUME:
            self._gateway.resume_subscription(ref)
        else:
            raise ValueError(f"Unknown gateway action {action!r}")
