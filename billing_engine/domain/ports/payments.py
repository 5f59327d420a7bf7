from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol


@dataclass(frozen=True, slots=True)
class ChargeResult:
    """Settlement outcome returned by a payment gateway."""

    succeeded: bool
    gateway_reference: Optional[str] = None
    failure_reason: Optional[str] = None

    @classmethod
    def success(cls, gateway_reference: Optional[str]) -> "ChargeResult":
        return cls(succeeded=True, gateway_reference=gateway_reference)

    @classmethod
    def failure(cls, reason: str, gateway_reference: Optional[str] = None) -> "ChargeResult":
        return cls(succeeded=False, gateway_reference=gateway_reference, failure_reason=reason)


class PaymentGateway(Protocol):
    """External processor charging recurring amounts against stored payment methods."""

    def charge(
        self,
        customer_ref: Optional[str],
        amount: Decimal,
        currency: str,
        subscription_ref: str,
    ) -> ChargeResult:
        ...

    def cancel_subscription(self, subscription_ref: str, immediate: bool) -> None:
        ...

    def pause_subscription(self, subscription_ref: str) -> None:
        ...

    def resume_subscription(self, subscription_ref: str) -> None:
        ...
