from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Sequence

from ..models import Customer, HistoryEntry, PaymentOutcome, PaymentRecord, Subscription


class CustomerRepository(Protocol):
    """Abstract storage for customers owning subscriptions."""

    def create_customer(self, customer: Customer) -> Customer:
        ...

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        ...


class SubscriptionRepository(Protocol):
    """Persistence functions for the subscription aggregate.

    ``save_subscription`` writes the subscription row together with the
    given history and payment rows in a single transaction, and only while
    ``lease_owner`` still holds the lease.
    """

    def insert_subscription(self, subscription: Subscription, history: Sequence[HistoryEntry]) -> Subscription:
        ...

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def save_subscription(
        self,
        subscription: Subscription,
        *,
        lease_owner: str,
        history: Sequence[HistoryEntry] = (),
        payments: Sequence[PaymentRecord] = (),
    ) -> Subscription:
        ...

    def get_subscription_by_gateway_ref(self, gateway_subscription_ref: str) -> Optional[Subscription]:
        ...

    def list_subscriptions_for_customer(self, customer_id: str) -> List[Subscription]:
        ...

    def list_due_subscriptions(self, now: datetime, limit: int) -> List[Subscription]:
        ...

    def list_trials_ending(self, before: datetime, limit: int) -> List[Subscription]:
        ...

    def list_incomplete_created_before(self, cutoff: datetime, limit: int) -> List[Subscription]:
        ...

    def list_pending_gateway_actions(self, limit: int) -> List[Subscription]:
        ...


class LeaseRepository(Protocol):
    """Exclusive, expiring claims on single subscriptions."""

    def claim_subscription(self, subscription_id: str, owner: str, now: datetime, expires_at: datetime) -> bool:
        ...

    def release_subscription(self, subscription_id: str, owner: str) -> None:
        ...


class HistoryRepository(Protocol):
    """Append-only audit log of transitions and settlements."""

    def get_history(self, subscription_id: str, limit: int) -> List[HistoryEntry]:
        ...

    def get_payments(self, subscription_id: str, limit: int) -> List[PaymentRecord]:
        ...

    def has_payment(
        self,
        subscription_id: str,
        gateway_references: Sequence[Optional[str]],
        outcome: PaymentOutcome,
    ) -> bool:
        """Whether a payment with ``outcome`` and any of the references is already recorded."""
        ...


class BillingStore(
    CustomerRepository,
    SubscriptionRepository,
    LeaseRepository,
    HistoryRepository,
    Protocol,
):
    """Composite store combining every persistence concern used by the engine."""

    def close(self) -> None:
        ...
