import asyncio
import json
import logging
from typing import Dict

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status

from ....application.services.gateway_events import GatewayEventService
from ....core.config import Settings
from ....core.dependencies import get_gateway_event_service, get_settings
from ....domain.errors import BillingError
from ..errors import to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


@router.post("/stripe", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    gateway_events: GatewayEventService = Depends(get_gateway_event_service),
) -> Dict[str, str]:
    """Verify a Stripe webhook and apply it to the matching local subscription."""
    payload = await request.body()
    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not set; webhook ignored without verification.")
        return {"status": "ignored"}

    sig_header = request.headers.get("stripe-signature", "")
    try:
        event = stripe.Webhook.construct_event(payload, sig_header, settings.stripe_webhook_secret)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload") from exc
    except stripe.SignatureVerificationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature") from exc

    event_type = event["type"]
    # The verified body, as plain dicts for the service layer.
    event_data = json.loads(payload)["data"]["object"]
    logger.info("Stripe webhook received: %s", event_type)

    try:
        await asyncio.to_thread(gateway_events.handle_event, event_type, event_data)
    except BillingError as exc:
        # Non-2xx makes Stripe redeliver the event later.
        raise to_http_exception(exc) from exc
    return {"status": "success"}
