import asyncio

from fastapi import APIRouter, Depends

from ....application.services.renewal_scheduler import RenewalScheduler
from ....core.dependencies import get_renewal_scheduler
from ....domain.errors import BillingError
from ..errors import to_http_exception
from ..schemas.billing import HousekeepingResponse, RenewalRunResponse

router = APIRouter(prefix="/api/renewals", tags=["Renewals"])


@router.post("/run", response_model=RenewalRunResponse)
async def run_renewals(scheduler: RenewalScheduler = Depends(get_renewal_scheduler)) -> RenewalRunResponse:
    """Attempt every due subscription once; safe to trigger repeatedly."""
    try:
        summary = await scheduler.run_renewal_batch()
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    if summary is None:
        return RenewalRunResponse(ran=False)
    return RenewalRunResponse(ran=True, summary=summary.as_dict())


@router.post("/housekeeping", response_model=HousekeepingResponse)
async def run_housekeeping(scheduler: RenewalScheduler = Depends(get_renewal_scheduler)) -> HousekeepingResponse:
    summary = await asyncio.to_thread(scheduler.run_housekeeping)
    return HousekeepingResponse(
        trial_reminders=summary.trial_reminders,
        expired_incomplete=summary.expired_incomplete,
        reconciled=summary.reconciled,
        errors=summary.errors,
    )
