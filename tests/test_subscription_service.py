"""
Tests for administrative lifecycle operations.

Covers creation and its validation, pause/resume, immediate and scheduled
cancellation, initial payments, housekeeping and gateway propagation.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from billing_engine.application.services.subscription_service import SubscriptionService
from billing_engine.domain.errors import (
    CustomerNotFound,
    InvalidSpec,
    InvalidState,
    LeaseUnavailable,
    StoreFailure,
    SubscriptionNotFound,
)
from billing_engine.domain.models import CadenceUnit, PaymentOutcome, SubscriptionSpec, SubscriptionStatus

S = SubscriptionStatus

# Matches the default FrozenClock instant.
START = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


class TestCreate:
    def test_creates_active_subscription_with_first_period(self, make_subscription, store, notifier):
        subscription = make_subscription()

        assert subscription.status is S.ACTIVE
        assert subscription.current_period_start == START
        assert subscription.current_period_end == START.replace(month=2)
        assert subscription.next_charge_at == subscription.current_period_end
        assert subscription.period_index == 1

        stored = store.get_subscription(subscription.id)
        assert stored.amount == Decimal("19.99")
        assert stored.currency == "USD"
        assert [entry.action for entry in store.get_history(subscription.id, 10)] == ["created"]
        assert notifier.types(subscription.id) == ["created"]

    def test_future_trial_defers_first_charge_to_trial_end(self, make_subscription):
        trial_end = START + timedelta(days=14)

        subscription = make_subscription(trial_ends_at=trial_end)

        assert subscription.status is S.TRIALING
        assert subscription.current_period_end == trial_end
        assert subscription.next_charge_at == trial_end

    def test_past_trial_starts_active(self, make_subscription):
        subscription = make_subscription(trial_ends_at=START - timedelta(days=1))
        assert subscription.status is S.ACTIVE

    def test_currency_is_normalised(self, make_subscription):
        assert make_subscription(currency="eur").currency == "EUR"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"amount": Decimal("0")},
            {"amount": Decimal("-5")},
            {"amount": Decimal("NaN")},
            {"amount": "abc"},
            {"cadence_count": 0},
            {"cadence_count": True},
            {"cadence_unit": "fortnight"},
            {"currency": "US"},
            {"product_label": "   "},
            {"customer_id": "missing"},
            {"collect_initial_payment": True, "trial_ends_at": START + timedelta(days=3)},
        ],
    )
    def test_rejects_invalid_specs(self, make_subscription, store, overrides):
        with pytest.raises(InvalidSpec):
            make_subscription(**overrides)

    def test_initial_payment_starts_incomplete(self, make_subscription):
        assert make_subscription(collect_initial_payment=True).status is S.INCOMPLETE


class TestPauseResume:
    def test_pause_and_resume_active(self, make_subscription, subscription_service, store, gateway, notifier):
        subscription = make_subscription()

        paused = subscription_service.pause(subscription.id, reason="Vacation")
        assert paused.status is S.PAUSED
        assert store.get_subscription(subscription.id).pre_pause_status is S.ACTIVE

        resumed = subscription_service.resume(subscription.id)
        assert resumed.status is S.ACTIVE
        assert resumed.pre_pause_status is None

        assert gateway.actions == [("pause", "sub_123"), ("resume", "sub_123")]
        assert notifier.types(subscription.id) == ["created", "paused", "resumed"]
        actions = [entry.action for entry in store.get_history(subscription.id, 10)]
        assert actions == ["resumed", "paused", "created"]

    def test_resume_restores_trialing(self, make_subscription, subscription_service):
        subscription = make_subscription(trial_ends_at=START + timedelta(days=14))

        subscription_service.pause(subscription.id)
        assert subscription_service.resume(subscription.id).status is S.TRIALING

    def test_cannot_pause_twice(self, make_subscription, subscription_service, store):
        subscription = make_subscription()
        subscription_service.pause(subscription.id)

        with pytest.raises(InvalidState):
            subscription_service.pause(subscription.id)
        assert len(store.get_history(subscription.id, 10)) == 2

    def test_cannot_resume_active(self, make_subscription, subscription_service):
        subscription = make_subscription()
        with pytest.raises(InvalidState):
            subscription_service.resume(subscription.id)

    def test_local_only_subscription_never_reaches_gateway(self, make_subscription, subscription_service, gateway):
        subscription = make_subscription(gateway_subscription_ref=None)
        subscription_service.pause(subscription.id)
        assert gateway.actions == []

    def test_unknown_subscription(self, subscription_service):
        with pytest.raises(SubscriptionNotFound):
            subscription_service.pause("nope")

    def test_leased_subscription_is_rejected(self, make_subscription, subscription_service, store, clock):
        subscription = make_subscription()
        assert store.claim_subscription(subscription.id, "worker-2", clock(), clock() + timedelta(minutes=5))

        with pytest.raises(LeaseUnavailable):
            subscription_service.pause(subscription.id)
        assert store.get_subscription(subscription.id).status is S.ACTIVE


class TestCancel:
    def test_immediate_cancel(self, make_subscription, subscription_service, gateway, notifier, clock):
        subscription = make_subscription()

        cancelled = subscription_service.cancel(subscription.id, reason="Closed account", immediate=True)

        assert cancelled.status is S.CANCELLED
        assert cancelled.cancelled_at == clock()
        assert cancelled.cancellation_reason == "Closed account"
        assert cancelled.next_charge_at is None
        assert gateway.actions == [("cancel", "sub_123")]
        assert notifier.of_type("cancelled")[0].payload["reason"] == "Closed account"

    def test_scheduled_cancel_keeps_status_until_period_end(
        self, make_subscription, subscription_service, gateway, notifier, store
    ):
        subscription = make_subscription()

        scheduled = subscription_service.cancel(subscription.id, reason="Too expensive")

        assert scheduled.status is S.ACTIVE
        assert scheduled.cancel_at_period_end is True
        assert scheduled.next_charge_at == subscription.current_period_end
        assert gateway.actions == [("cancel_at_period_end", "sub_123")]
        event = notifier.of_type("cancelled")[0]
        assert event.payload["scheduled"] is True
        assert store.get_history(subscription.id, 1)[0].action == "cancellation_scheduled"

    def test_scheduled_cancel_only_once(self, make_subscription, subscription_service):
        subscription = make_subscription()
        subscription_service.cancel(subscription.id)

        with pytest.raises(InvalidState):
            subscription_service.cancel(subscription.id)
        assert subscription_service.cancel(subscription.id, immediate=True).status is S.CANCELLED

    def test_paused_subscription_can_be_cancelled(self, make_subscription, subscription_service):
        subscription = make_subscription()
        subscription_service.pause(subscription.id)

        assert subscription_service.cancel(subscription.id, immediate=True).status is S.CANCELLED

    def test_cancelled_is_terminal(self, make_subscription, subscription_service):
        subscription = make_subscription()
        subscription_service.cancel(subscription.id, immediate=True)

        with pytest.raises(InvalidState):
            subscription_service.cancel(subscription.id, immediate=True)
        with pytest.raises(InvalidState):
            subscription_service.resume(subscription.id)


class TestInitialPayment:
    def test_success_activates(self, make_subscription, subscription_service, store):
        subscription = make_subscription(collect_initial_payment=True)

        activated = subscription_service.confirm_initial_payment(subscription.id, True, gateway_reference="pi_1")

        assert activated.status is S.ACTIVE
        payments = store.get_payments(subscription.id, 10)
        assert [(p.outcome, p.gateway_reference) for p in payments] == [(PaymentOutcome.SUCCEEDED, "pi_1")]

    def test_failure_cancels(self, make_subscription, subscription_service, store):
        subscription = make_subscription(collect_initial_payment=True)

        cancelled = subscription_service.confirm_initial_payment(subscription.id, False, failure_reason="Card declined")

        assert cancelled.status is S.CANCELLED
        assert store.get_payments(subscription.id, 10)[0].failure_reason == "Card declined"

    def test_requires_incomplete(self, make_subscription, subscription_service):
        subscription = make_subscription()
        with pytest.raises(InvalidState):
            subscription_service.confirm_initial_payment(subscription.id, True)


class TestHousekeeping:
    def test_expire_incomplete_after_max_age(self, make_subscription, subscription_service, clock, notifier):
        subscription = make_subscription(collect_initial_payment=True)
        fresh = make_subscription()

        assert subscription_service.expire_incomplete(timedelta(hours=23)) == 0
        clock.advance(hours=24)
        assert subscription_service.expire_incomplete(timedelta(hours=23)) == 1
        assert subscription_service.expire_incomplete(timedelta(hours=23)) == 0

        assert subscription_service.get(subscription.id).status is S.INCOMPLETE_EXPIRED
        assert subscription_service.get(fresh.id).status is S.ACTIVE
        assert notifier.types(subscription.id)[-1] == "incomplete_expired"

    def test_trial_reminder_sent_once(self, make_subscription, subscription_service, clock, notifier, store):
        subscription = make_subscription(trial_ends_at=START + timedelta(days=5))

        assert subscription_service.send_trial_ending_reminders(timedelta(days=3)) == 0
        clock.advance(days=3)
        assert subscription_service.send_trial_ending_reminders(timedelta(days=3)) == 1
        assert subscription_service.send_trial_ending_reminders(timedelta(days=3)) == 0

        assert len(notifier.of_type("trial_ending")) == 1
        assert store.get_subscription(subscription.id).trial_reminder_sent_at == clock()

    def test_failed_propagation_is_reconciled(self, make_subscription, subscription_service, gateway, store):
        subscription = make_subscription()
        gateway.fail_actions = True

        paused = subscription_service.pause(subscription.id)

        assert paused.status is S.PAUSED
        assert store.get_subscription(subscription.id).pending_gateway_action == "pause"
        assert subscription_service.reconcile_gateway() == 0

        gateway.fail_actions = False
        assert subscription_service.reconcile_gateway() == 1
        assert store.get_subscription(subscription.id).pending_gateway_action is None
        assert gateway.actions == [("pause", "sub_123")]

    def test_unqueued_gateway_failure_keeps_the_committed_cancel(
        self, make_subscription, subscription_service, gateway, store, notifier, monkeypatch
    ):
        subscription = make_subscription()
        gateway.fail_actions = True
        save = store.save_subscription

        def save_or_fail(item, **kwargs):
            if item.pending_gateway_action:
                raise StoreFailure("database is locked")
            return save(item, **kwargs)

        monkeypatch.setattr(store, "save_subscription", save_or_fail)

        cancelled = subscription_service.cancel(subscription.id, reason="Moving", immediate=True)

        assert cancelled.status is S.CANCELLED
        assert store.get_subscription(subscription.id).status is S.CANCELLED
        assert notifier.of_type("cancelled")[0].payload["reason"] == "Moving"


class TestQueries:
    def test_list_for_customer(self, make_subscription, subscription_service, customer):
        first = make_subscription()
        second = make_subscription(product_label="Add-on")

        ids = {item.id for item in subscription_service.list_for_customer(customer.id)}
        assert ids == {first.id, second.id}

    def test_list_for_unknown_customer(self, subscription_service):
        with pytest.raises(CustomerNotFound):
            subscription_service.list_for_customer("ghost")


def test_failing_dispatcher_does_not_break_operations(store, gateway_sync, leases, clock, customer):
    class ExplodingDispatcher:
        def dispatch(self, event):
            raise RuntimeError("smtp down")

    service = SubscriptionService(store, gateway_sync, ExplodingDispatcher(), leases, clock)

    subscription = service.create(
        SubscriptionSpec(
            customer_id=customer.id,
            product_label="Pro plan",
            amount=Decimal("10"),
            cadence_unit=CadenceUnit.WEEK,
        )
    )
    assert service.pause(subscription.id).status is S.PAUSED
