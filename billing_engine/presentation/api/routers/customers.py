from typing import List

from fastapi import APIRouter, Depends, status

from ....application.services.customer_service import CustomerService
from ....application.services.subscription_service import SubscriptionService
from ....core.dependencies import get_customer_service, get_subscription_service
from ....domain.errors import BillingError
from ..errors import to_http_exception
from ..schemas.billing import CreateCustomerRequest, CustomerResponse, SubscriptionResponse

router = APIRouter(prefix="/api/customers", tags=["Customers"])


@router.post("", response_model=CustomerResponse, status_code=status.HTTP_201_CREATED)
def create_customer(
    payload: CreateCustomerRequest,
    customer_service: CustomerService = Depends(get_customer_service),
) -> CustomerResponse:
    try:
        customer = customer_service.create_customer(
            payload.email,
            name=payload.name,
            gateway_customer_ref=payload.gateway_customer_ref,
        )
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return CustomerResponse.from_domain(customer)


@router.get("/{customer_id}", response_model=CustomerResponse)
def get_customer(
    customer_id: str,
    customer_service: CustomerService = Depends(get_customer_service),
) -> CustomerResponse:
    try:
        customer = customer_service.get_customer(customer_id)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return CustomerResponse.from_domain(customer)


@router.get("/{customer_id}/subscriptions", response_model=List[SubscriptionResponse])
def list_customer_subscriptions(
    customer_id: str,
    subscription_service: SubscriptionService = Depends(get_subscription_service),
) -> List[SubscriptionResponse]:
    try:
        subscriptions = subscription_service.list_for_customer(customer_id)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return [SubscriptionResponse.from_domain(item) for item in subscriptions]
