from __future__ import annotations

from typing import Protocol

from ..models import NotificationEvent


class NotificationDispatcher(Protocol):
    """Out-of-band delivery of lifecycle events (e-mail, webhooks)."""

    def dispatch(self, event: NotificationEvent) -> None:
        ...
