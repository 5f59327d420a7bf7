"""Subscription aggregate and the value types describing its billing cadence."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


class CadenceUnit(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.INCOMPLETE_EXPIRED})

# Statuses picked up by the renewal scheduler.
BILLABLE_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE}
)


@dataclass(slots=True)
class Subscription:
    """
    Subscription entity owning the billing window of one customer product.

    Attributes:
        id: Opaque unique identifier
        customer_id: Reference to the owning Customer
        status: Current lifecycle status
        product_label: Free-text description of what is billed
        amount: Amount charged per period
        currency: ISO 4217 currency code
        cadence_unit: Unit of the billing interval
        cadence_count: Number of units per billing interval
        billing_anchor: Timestamp every period boundary is computed from
        period_index: Index of the current period relative to the anchor
        current_period_start: Start of the active billing window
        current_period_end: End of the active billing window
        next_charge_at: When the next renewal attempt is due (None once terminal)
        trial_ends_at: End of the trial, if any
        consecutive_failure_count: Failed charges since the last success
        cancel_at_period_end: Whether the subscription stops at the period boundary
        pre_pause_status: Status to restore on resume
        cancelled_at: When the subscription reached ``cancelled``
        cancellation_reason: Why it was cancelled
        gateway_subscription_ref: External gateway id; None means local-only billing
        pending_gateway_action: Gateway-side action awaiting reconciliation
        trial_reminder_sent_at: When the trial-ending notification went out
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    id: str
    customer_id: str
    status: SubscriptionStatus
    product_label: str
    amount: Decimal
    currency: str
    cadence_unit: CadenceUnit
    cadence_count: int
    billing_anchor: datetime
    period_index: int
    current_period_start: datetime
    current_period_end: datetime
    next_charge_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    trial_ends_at: Optional[datetime] = None
    consecutive_failure_count: int = 0
    cancel_at_period_end: bool = False
    pre_pause_status: Optional[SubscriptionStatus] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    gateway_subscription_ref: Optional[str] = None
    pending_gateway_action: Optional[str] = None
    trial_reminder_sent_at: Optional[datetime] = None

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_billable(self) -> bool:
        return self.status in BILLABLE_STATUSES

    def is_renewal_candidate(self) -> bool:
        """Billable, or paused with a cancellation waiting for the period boundary."""
        if self.status is SubscriptionStatus.PAUSED:
            return self.cancel_at_period_end
        return self.is_billable()

    def is_due(self, now: datetime) -> bool:
        return self.is_renewal_candidate() and self.next_charge_at is not None and self.next_charge_at <= now

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} customer_id={self.customer_id} status={self.status.value}>"


@dataclass(slots=True)
class SubscriptionSpec:
    """Input accepted by ``SubscriptionService.create``."""

    customer_id: str
    product_label: str
    amount: Decimal
    cadence_unit: CadenceUnit
    currency: str = "USD"
    cadence_count: int = 1
    trial_ends_at: Optional[datetime] = None
    gateway_subscription_ref: Optional[str] = None
    collect_initial_payment: bool = False
