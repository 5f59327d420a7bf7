from fastapi import HTTPException, status

from ...domain.errors import (
    BillingError,
    CustomerNotFound,
    InvalidSpec,
    InvalidState,
    LeaseUnavailable,
    StoreFailure,
    SubscriptionNotFound,
)

_STATUS_BY_ERROR = (
    (InvalidSpec, status.HTTP_400_BAD_REQUEST),
    (InvalidState, status.HTTP_409_CONFLICT),
    (SubscriptionNotFound, status.HTTP_404_NOT_FOUND),
    (CustomerNotFound, status.HTTP_404_NOT_FOUND),
    (LeaseUnavailable, status.HTTP_409_CONFLICT),
    (StoreFailure, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_exception(exc: BillingError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
