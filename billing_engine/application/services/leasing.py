from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterator
from uuid import uuid4

from ...domain.clock import Clock
from ...domain.errors import LeaseUnavailable
from ...domain.ports.persistence import LeaseRepository

logger = logging.getLogger(__name__)


class SubscriptionLeases:
    """Hands out short-lived exclusive claims on single subscriptions."""

    def __init__(self, store: LeaseRepository, clock: Clock, ttl_seconds: float) -> None:
        self._store = store
        self._clock = clock
        self._ttl = timedelta(seconds=ttl_seconds)

    @contextmanager
    def hold(self, subscription_id: str) -> Iterator[str]:
        """Claim ``subscription_id`` for the duration of the block, yielding the owner token.

        Raises ``LeaseUnavailable`` when another worker holds an unexpired
        lease. The lease is released on exit, including on errors.
        """
        owner = uuid4().hex
        now = self._clock()
        if not self._store.claim_subscription(subscription_id, owner, now, now + self._ttl):
            logger.debug("Lease on subscription %s is held elsewhere", subscription_id)
            raise LeaseUnavailable(subscription_id)
        try:
            yield owner
        finally:
            self._store.release_subscription(subscription_id, owner)
