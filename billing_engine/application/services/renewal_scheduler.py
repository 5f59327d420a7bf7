from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ...domain.clock import Clock
from ...domain.errors import LeaseUnavailable, NotDue, StoreFailure
from ...domain.ports.notifications import NotificationDispatcher
from ...domain.ports.persistence import BillingStore
from .notifications import notify_async
from .renewal_orchestrator import RenewalOrchestrator, RenewalResult
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RenewalBatchSummary:
    started_at: datetime
    finished_at: Optional[datetime] = None
    selected: int = 0
    renewed: int = 0
    payment_failed: int = 0
    cancelled: int = 0
    ended: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def succeeded(self) -> int:
        return self.renewed

    @property
    def failed(self) -> int:
        return self.payment_failed + self.cancelled + self.errors

    def record(self, result: RenewalResult) -> None:
        if result in (RenewalResult.RENEWED, RenewalResult.TRIAL_CONVERTED):
            self.renewed += 1
        elif result is RenewalResult.PAYMENT_FAILED:
            self.payment_failed += 1
        elif result is RenewalResult.CANCELLED:
            self.cancelled += 1
        else:
            self.ended += 1

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        data["succeeded"] = self.succeeded
        data["failed"] = self.failed
        return data


@dataclass(slots=True)
class HousekeepingSummary:
    trial_reminders: int = 0
    expired_incomplete: int = 0
    reconciled: int = 0
    errors: List[str] = field(default_factory=list)


class RenewalScheduler:
    """Selects due subscriptions and drives the orchestrator over them."""

    def __init__(
        self,
        store: BillingStore,
        orchestrator: RenewalOrchestrator,
        subscriptions: SubscriptionService,
        notifier: NotificationDispatcher,
        clock: Clock,
        *,
        batch_size: int = 50,
        item_delay: float = 0.1,
        max_workers: int = 1,
        interval_seconds: float = 0,
        trial_reminder_days: int = 3,
        incomplete_expiry_hours: int = 23,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._subscriptions = subscriptions
        self._notifier = notifier
        self._clock = clock
        self._batch_size = batch_size
        self._item_delay = item_delay
        self._max_workers = max(1, max_workers)
        self._interval = interval_seconds
        self._trial_reminder_lead = timedelta(days=trial_reminder_days)
        self._incomplete_max_age = timedelta(hours=incomplete_expiry_hours)
        self._running = asyncio.Lock()
        self._shutdown = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    async def run_renewal_batch(self) -> Optional[RenewalBatchSummary]:
        """
        Attempt every due subscription once.

        Returns None without doing anything when a batch is already running
        in this process.
        """
        if self._running.locked():
            logger.info("Renewal batch already running; skipping this trigger.")
            return None
        async with self._running:
            return await self._run_batch()

    async def _run_batch(self) -> RenewalBatchSummary:
        now = self._clock()
        due = self._store.list_due_subscriptions(now, self._batch_size)
        summary = RenewalBatchSummary(started_at=now, selected=len(due))
        logger.info("Processing %s due subscriptions.", len(due))

        semaphore = asyncio.Semaphore(self._max_workers)
        loop = asyncio.get_running_loop()
        tasks: List[asyncio.Task[None]] = []
        for position, subscription in enumerate(due):
            await semaphore.acquire()
            if position and self._item_delay > 0:
                await asyncio.sleep(self._item_delay)
            tasks.append(
                loop.create_task(
                    self._process_item(subscription.id, summary, semaphore),
                    name=f"renewal-{subscription.id}",
                )
            )
        await asyncio.gather(*tasks)

        summary.finished_at = self._clock()
        logger.info(
            "Renewal batch finished: %s renewed, %s failed, %s cancelled, %s skipped, %s errors.",
            summary.renewed,
            summary.payment_failed,
            summary.cancelled,
            summary.skipped,
            summary.errors,
        )
        await notify_async(self._notifier, "renewals_processed", None, summary.as_dict())
        return summary

    async def _process_item(
        self,
        subscription_id: str,
        summary: RenewalBatchSummary,
        semaphore: asyncio.Semaphore,
    ) -> None:
        try:
            outcome = await self._orchestrator.attempt_renewal(subscription_id)
        except (NotDue, LeaseUnavailable) as exc:
            logger.debug("Skipping subscription %s: %s", subscription_id, exc)
            summary.skipped += 1
        except StoreFailure as exc:
            logger.error("Store failure while renewing subscription %s: %s", subscription_id, exc)
            summary.errors += 1
        except Exception:
            logger.exception("Unexpected error while renewing subscription %s", subscription_id)
            summary.errors += 1
        else:
            summary.record(outcome.result)
        finally:
            semaphore.release()

    def run_housekeeping(self) -> HousekeepingSummary:
        """Trial reminders, expiry of stale incomplete subscriptions and gateway reconciliation."""
        summary = HousekeepingSummary()
        steps = (
            ("trial_reminders", lambda: self._subscriptions.send_trial_ending_reminders(self._trial_reminder_lead)),
            ("expired_incomplete", lambda: self._subscriptions.expire_incomplete(self._incomplete_max_age)),
            ("reconciled", lambda: self._subscriptions.reconcile_gateway(self._batch_size)),
        )
        for name, step in steps:
            try:
                setattr(summary, name, step())
            except StoreFailure as exc:
                logger.error("Housekeeping step %s failed: %s", name, exc)
                summary.errors.append(name)
        return summary

    async def start(self) -> None:
        if self._interval <= 0:
            logger.info("Periodic renewal driver disabled.")
            return
        if self._task is not None:
            return
        logger.info("Starting renewal scheduler every %ss.", self._interval)
        self._shutdown.clear()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run_periodically(), name="renewal-scheduler")

    async def stop(self) -> None:
        if self._task is None:
            return
        logger.info("Stopping renewal scheduler.")
        self._shutdown.set()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _run_periodically(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.to_thread(self.run_housekeeping)
                await self.run_renewal_batch()
            except Exception:
                logger.exception("Scheduled renewal run failed.")
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
