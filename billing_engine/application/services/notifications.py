from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from ...domain.models import NotificationEvent
from ...domain.ports.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)


def notify(
    dispatcher: NotificationDispatcher,
    event_type: str,
    subscription_id: Optional[str],
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    """Fire-and-forget delivery: dispatcher errors are logged and never reach the caller."""
    event = NotificationEvent(event_type=event_type, subscription_id=subscription_id, payload=payload or {})
    try:
        dispatcher.dispatch(event)
    except Exception:
        logger.exception("Notification dispatcher raised for %s (subscription %s).", event_type, subscription_id)


async def notify_async(
    dispatcher: NotificationDispatcher,
    event_type: str,
    subscription_id: Optional[str],
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    """``notify`` for coroutines; SMTP delivery blocks, so it runs in a worker thread."""
    await asyncio.to_thread(notify, dispatcher, event_type, subscription_id, payload)
