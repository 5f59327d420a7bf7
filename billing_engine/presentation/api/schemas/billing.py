"""Pydantic schemas for the billing API endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ....domain.models import Customer, HistoryEntry, PaymentRecord, Subscription


class CreateCustomerRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    name: Optional[str] = Field(None, max_length=200)
    gateway_customer_ref: Optional[str] = Field(None, description="Stripe customer id")


class CustomerResponse(BaseModel):
    id: str
    email: str
    name: Optional[str]
    gateway_customer_ref: Optional[str]
    created_at: datetime

    @classmethod
    def from_domain(cls, customer: Customer) -> "CustomerResponse":
        return cls(
            id=customer.id,
            email=customer.email,
            name=customer.name,
            gateway_customer_ref=customer.gateway_customer_ref,
            created_at=customer.created_at,
        )


class CreateSubscriptionRequest(BaseModel):
    customer_id: str = Field(..., min_length=1)
    product_label: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., description="Amount charged per period")
    currency: str = Field("USD", min_length=3, max_length=3)
    cadence_unit: str = Field(..., description="One of: day, week, month, year")
    cadence_count: int = Field(1, ge=1)
    trial_ends_at: Optional[datetime] = None
    gateway_subscription_ref: Optional[str] = Field(None, description="Stripe subscription id")
    collect_initial_payment: bool = False


class PauseRequest(BaseModel):
    reason: str = ""


class CancelRequest(BaseModel):
    reason: str = ""
    immediate: bool = False


class InitialPaymentRequest(BaseModel):
    succeeded: bool
    gateway_reference: Optional[str] = None
    failure_reason: Optional[str] = None


class SubscriptionResponse(BaseModel):
    id: str
    customer_id: str
    status: str
    product_label: str
    amount: str
    currency: str
    cadence_unit: str
    cadence_count: int
    current_period_start: datetime
    current_period_end: datetime
    next_charge_at: Optional[datetime]
    trial_ends_at: Optional[datetime]
    consecutive_failure_count: int
    cancel_at_period_end: bool
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]
    gateway_subscription_ref: Optional[str]
    pending_gateway_action: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            customer_id=subscription.customer_id,
            status=subscription.status.value,
            product_label=subscription.product_label,
            amount=str(subscription.amount),
            currency=subscription.currency,
            cadence_unit=subscription.cadence_unit.value,
            cadence_count=subscription.cadence_count,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            next_charge_at=subscription.next_charge_at,
            trial_ends_at=subscription.trial_ends_at,
            consecutive_failure_count=subscription.consecutive_failure_count,
            cancel_at_period_end=subscription.cancel_at_period_end,
            cancelled_at=subscription.cancelled_at,
            cancellation_reason=subscription.cancellation_reason,
            gateway_subscription_ref=subscription.gateway_subscription_ref,
            pending_gateway_action=subscription.pending_gateway_action,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )


class HistoryEntryResponse(BaseModel):
    id: Optional[int]
    action: str
    note: str
    actor: str
    created_at: datetime

    @classmethod
    def from_domain(cls, entry: HistoryEntry) -> "HistoryEntryResponse":
        return cls(id=entry.id, action=entry.action, note=entry.note, actor=entry.actor, created_at=entry.created_at)


class PaymentRecordResponse(BaseModel):
    id: Optional[int]
    amount: str
    currency: str
    outcome: str
    gateway_reference: Optional[str]
    failure_reason: Optional[str]
    created_at: datetime

    @classmethod
    def from_domain(cls, payment: PaymentRecord) -> "PaymentRecordResponse":
        return cls(
            id=payment.id,
            amount=str(payment.amount),
            currency=payment.currency,
            outcome=payment.outcome.value,
            gateway_reference=payment.gateway_reference,
            failure_reason=payment.failure_reason,
            created_at=payment.created_at,
        )


class RenewalRunResponse(BaseModel):
    ran: bool
    summary: Optional[Dict[str, Any]] = None


class HousekeepingResponse(BaseModel):
    trial_reminders: int
    expired_incomplete: int
    reconciled: int
    errors: List[str]
