from typing import List

from fastapi import APIRouter, Depends, Query, status

from ....application.services.subscription_service import SubscriptionService
from ....core.dependencies import get_subscription_service
from ....domain.errors import BillingError
from ....domain.models import SubscriptionSpec
from ..errors import to_http_exception
from ..schemas.billing import (
    CancelRequest,
    CreateSubscriptionRequest,
    HistoryEntryResponse,
    InitialPaymentRequest,
    PauseRequest,
    PaymentRecordResponse,
    SubscriptionResponse,
)

router = APIRouter(prefix="/api/subscriptions", tags=["Subscriptions"])


@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: CreateSubscriptionRequest,
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    spec = SubscriptionSpec(
        customer_id=payload.customer_id,
        product_label=payload.product_label,
        amount=payload.amount,
        cadence_unit=payload.cadence_unit,
        currency=payload.currency,
        cadence_count=payload.cadence_count,
        trial_ends_at=payload.trial_ends_at,
        gateway_subscription_ref=payload.gateway_subscription_ref,
        collect_initial_payment=payload.collect_initial_payment,
    )
    try:
        subscription = subscription_service.create(spec)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return SubscriptionResponse.from_domain(subscription)


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
def get_subscription(
    subscription_id: str,
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    try:
        subscription = subscription_service.get(subscription_id)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return SubscriptionResponse.from_domain(subscription)


@router.post("/{subscription_id}/pause", response_model=SubscriptionResponse)
def pause_subscription(
    subscription_id: str,
    payload: PauseRequest,
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    try:
        subscription = subscription_service.pause(subscription_id, reason=payload.reason)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return SubscriptionResponse.from_domain(subscription)


@router.post("/{subscription_id}/resume", response_model=SubscriptionResponse)
def resume_subscription(
    subscription_id: str,
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    try:
        subscription = subscription_service.resume(subscription_id)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return SubscriptionResponse.from_domain(subscription)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    subscription_id: str,
    payload: CancelRequest,
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    try:
        subscription = subscription_service.cancel(
            subscription_id,
            reason=payload.reason,
            immediate=payload.immediate,
        )
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return SubscriptionResponse.from_domain(subscription)


@router.post("/{subscription_id}/initial-payment", response_model=SubscriptionResponse)
def confirm_initial_payment(
    subscription_id: str,
    payload: InitialPaymentRequest,
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    try:
        subscription = subscription_service.confirm_initial_payment(
            subscription_id,
            payload.succeeded,
            gateway_reference=payload.gateway_reference,
            failure_reason=payload.failure_reason,
        )
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return SubscriptionResponse.from_domain(subscription)


@router.get("/{subscription_id}/history", response_model=List[HistoryEntryResponse])
def get_history(
    subscription_id: str,
    limit: int = Query(50, ge=1, le=500),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> List[HistoryEntryResponse]:
    try:
        entries = subscription_service.get_history(subscription_id, limit=limit)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return [HistoryEntryResponse.from_domain(entry) for entry in entries]


@router.get("/{subscription_id}/payments", response_model=List[PaymentRecordResponse])
def get_payments(
    subscription_id: str,
    limit: int = Query(50, ge=1, le=500),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> List[PaymentRecordResponse]:
    try:
        payments = subscription_service.get_payments(subscription_id, limit=limit)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return [PaymentRecordResponse.from_domain(payment) for payment in payments]
