import asyncio
from datetime import timedelta

from billing_engine.application.services.renewal_scheduler import RenewalScheduler
from billing_engine.domain.models import SubscriptionStatus
from billing_engine.domain.ports.payments import ChargeResult

S = SubscriptionStatus


def run_batch(scheduler):
    return asyncio.run(scheduler.run_renewal_batch())


class TestRenewalBatch:
    def test_processes_every_due_subscription(self, make_subscription, scheduler, clock, gateway, notifier, store):
        first = make_subscription()
        second = make_subscription(gateway_subscription_ref="sub_456")
        local = make_subscription(gateway_subscription_ref=None)
        gateway.script(ChargeResult.success("pi_a"), ChargeResult.failure("Card declined"))
        clock.advance(days=32)

        summary = run_batch(scheduler)

        assert summary.selected == 3
        assert summary.renewed == 2
        assert summary.payment_failed == 1
        assert summary.errors == 0
        statuses = {store.get_subscription(item.id).status for item in (first, second, local)}
        assert statuses == {S.ACTIVE, S.PAST_DUE}

        event = notifier.of_type("renewals_processed")[0]
        assert event.subscription_id is None
        assert event.payload["renewed"] == 2
        assert event.payload["failed"] == 1

    def test_skips_subscriptions_that_are_not_due(self, make_subscription, scheduler, clock, gateway):
        make_subscription()
        clock.advance(days=10)

        summary = run_batch(scheduler)

        assert summary.selected == 0
        assert gateway.charges == []

    def test_paused_scheduled_cancellation_is_ended(
        self, make_subscription, scheduler, subscription_service, clock, store, gateway
    ):
        paused = make_subscription()
        subscription_service.pause(paused.id)
        subscription_service.cancel(paused.id)
        resting = make_subscription()
        subscription_service.pause(resting.id)
        clock.advance(days=32)

        summary = run_batch(scheduler)

        assert summary.selected == 1
        assert summary.ended == 1
        assert store.get_subscription(paused.id).status is S.CANCELLED
        assert store.get_subscription(resting.id).status is S.PAUSED
        assert gateway.charges == []

    def test_second_run_is_idempotent(self, make_subscription, scheduler, clock, gateway):
        make_subscription()
        clock.advance(days=32)

        assert run_batch(scheduler).renewed == 1
        assert run_batch(scheduler).selected == 0
        assert len(gateway.charges) == 1

    def test_leased_subscription_is_skipped(self, make_subscription, scheduler, clock, store):
        leased = make_subscription()
        make_subscription()
        clock.advance(days=32)
        store.claim_subscription(leased.id, "other-worker", clock(), clock() + timedelta(minutes=5))

        summary = run_batch(scheduler)

        assert summary.skipped == 1
        assert summary.renewed == 1
        assert store.get_subscription(leased.id).period_index == 1

    def test_errors_are_isolated_per_item(self, make_subscription, scheduler, orchestrator, clock, store, monkeypatch):
        broken = make_subscription()
        healthy = make_subscription()
        clock.advance(days=32)
        original = orchestrator.attempt_renewal

        async def flaky(subscription_id):
            if subscription_id == broken.id:
                raise RuntimeError("boom")
            return await original(subscription_id)

        monkeypatch.setattr(orchestrator, "attempt_renewal", flaky)

        summary = run_batch(scheduler)

        assert summary.errors == 1
        assert summary.renewed == 1
        assert store.get_subscription(healthy.id).period_index == 2

    def test_bounded_parallelism(self, store, orchestrator, subscription_service, notifier, clock, gateway, make_subscription):
        for _ in range(5):
            make_subscription()
        gateway.delay = 0.05
        clock.advance(days=32)
        parallel = RenewalScheduler(
            store, orchestrator, subscription_service, notifier, clock, item_delay=0, max_workers=3
        )

        summary = run_batch(parallel)

        assert summary.renewed == 5
        assert len(gateway.charges) == 5

    def test_overlapping_runs_are_skipped(self, make_subscription, scheduler, clock, gateway):
        make_subscription()
        gateway.delay = 0.1
        clock.advance(days=32)

        async def overlap():
            return await asyncio.gather(scheduler.run_renewal_batch(), scheduler.run_renewal_batch())

        first, second = asyncio.run(overlap())

        assert first.renewed == 1
        assert second is None


class TestHousekeeping:
    def test_runs_reminders_expiry_and_reconciliation(self, make_subscription, scheduler, subscription_service, clock, gateway):
        make_subscription(trial_ends_at=clock() + timedelta(days=2))
        make_subscription(collect_initial_payment=True)
        paused = make_subscription()
        gateway.fail_actions = True
        subscription_service.pause(paused.id)
        gateway.fail_actions = False
        clock.advance(days=1)

        report = scheduler.run_housekeeping()

        assert report.trial_reminders == 1
        assert report.expired_incomplete == 1
        assert report.reconciled == 1
        assert report.errors == []


class TestPeriodicDriver:
    def test_disabled_without_interval(self, scheduler):
        async def scenario():
            await scheduler.start()
            return scheduler._task

        assert asyncio.run(scenario()) is None

    def test_runs_until_stopped(self, store, orchestrator, subscription_service, notifier, clock, make_subscription):
        subscription = make_subscription()
        clock.advance(days=32)
        driver = RenewalScheduler(
            store, orchestrator, subscription_service, notifier, clock, item_delay=0, interval_seconds=0.05
        )

        async def scenario():
            await driver.start()
            await asyncio.sleep(0.2)
            await driver.stop()

        asyncio.run(scenario())

        assert store.get_subscription(subscription.id).period_index == 2
        assert driver._task is None
