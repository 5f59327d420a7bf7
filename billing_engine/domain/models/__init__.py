"""Domain models for the billing engine."""

from .customer import Customer
from .history import HistoryEntry, PaymentOutcome, PaymentRecord
from .notification import NotificationEvent
from .subscription import (
    BILLABLE_STATUSES,
    TERMINAL_STATUSES,
    CadenceUnit,
    Subscription,
    SubscriptionSpec,
    SubscriptionStatus,
)

__all__ = [
    "BILLABLE_STATUSES",
    "TERMINAL_STATUSES",
    "CadenceUnit",
    "Customer",
    "HistoryEntry",
    "NotificationEvent",
    "PaymentOutcome",
    "PaymentRecord",
    "Subscription",
    "SubscriptionSpec",
    "SubscriptionStatus",
]
