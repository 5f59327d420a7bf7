"""Error taxonomy raised by the billing engine."""

from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Base class for every error raised by the engine."""


class InvalidSpec(BillingError, ValueError):
    """Creation input failed validation."""


class InvalidState(BillingError, ValueError):
    """Operation requested from a status that does not permit it."""


class SubscriptionNotFound(BillingError, LookupError):
    def __init__(self, subscription_id: str) -> None:
        super().__init__(f"Subscription {subscription_id} not found.")
        self.subscription_id = subscription_id


class CustomerNotFound(BillingError, LookupError):
    def __init__(self, customer_id: str) -> None:
        super().__init__(f"Customer {customer_id} not found.")
        self.customer_id = customer_id


class NotDue(BillingError):
    """Renewal requested before the subscription is due; treated as a no-op."""

    def __init__(self, subscription_id: str, reason: str) -> None:
        super().__init__(f"Subscription {subscription_id} is not due: {reason}")
        self.subscription_id = subscription_id
        self.reason = reason


class GatewayFailure(BillingError):
    """The payment gateway declined, errored or timed out."""

    def __init__(self, reason: str, *, gateway_reference: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.gateway_reference = gateway_reference


class LeaseUnavailable(BillingError):
    """Another worker holds the lease on the subscription."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(f"Subscription {subscription_id} is leased by another worker.")
        self.subscription_id = subscription_id


class StoreFailure(BillingError):
    """The persistent store is unreachable or a write failed."""
