from datetime import timedelta
from decimal import Decimal

import pytest

from billing_engine.domain.errors import LeaseUnavailable
from billing_engine.domain.models import PaymentOutcome, SubscriptionStatus

S = SubscriptionStatus


def invoice(invoice_id, **fields):
    values = {"id": invoice_id, "subscription": "sub_123", "currency": "usd", "amount_paid": 1999, "amount_due": 1999}
    values.update(fields)
    return values


class TestInvoiceEvents:
    def test_payment_succeeded_is_recorded_once(self, make_subscription, gateway_events, store, notifier):
        subscription = make_subscription()

        gateway_events.handle_event("invoice.payment_succeeded", invoice("in_1", payment_intent="pi_9"))
        gateway_events.handle_event("invoice.payment_succeeded", invoice("in_1", payment_intent="pi_9"))

        payments = store.get_payments(subscription.id, 10)
        assert [(p.outcome, p.amount, p.currency, p.gateway_reference) for p in payments] == [
            (PaymentOutcome.SUCCEEDED, Decimal("19.99"), "USD", "in_1")
        ]
        assert store.get_history(subscription.id, 1)[0].action == "payment_succeeded"
        assert store.get_subscription(subscription.id).status is S.ACTIVE
        assert len(notifier.of_type("payment_succeeded")) == 1

    def test_payment_failed_moves_to_past_due_and_schedules_retry(
        self, make_subscription, gateway_events, store, clock, notifier
    ):
        subscription = make_subscription()
        failed = invoice("in_1", last_payment_error={"message": "Your card has insufficient funds."})

        updated = gateway_events.handle_event("invoice.payment_failed", failed)
        gateway_events.handle_event("invoice.payment_failed", failed)

        assert updated.status is S.PAST_DUE
        assert updated.consecutive_failure_count == 1
        assert updated.next_charge_at == clock() + timedelta(days=3)
        payments = store.get_payments(subscription.id, 10)
        assert [(p.outcome, p.failure_reason) for p in payments] == [
            (PaymentOutcome.FAILED, "Your card has insufficient funds.")
        ]
        assert notifier.of_type("payment_failed")[0].payload["failure_count"] == 1
        assert len(notifier.of_type("payment_failed")) == 1

    def test_payment_after_failure_recovers(self, make_subscription, gateway_events, store):
        subscription = make_subscription()
        gateway_events.handle_event("invoice.payment_failed", invoice("in_1"))

        recovered = gateway_events.handle_event("invoice.payment_succeeded", invoice("in_1"))

        assert recovered.status is S.ACTIVE
        assert recovered.consecutive_failure_count == 0
        assert [p.outcome for p in store.get_payments(subscription.id, 10)] == [
            PaymentOutcome.SUCCEEDED,
            PaymentOutcome.FAILED,
        ]

    def test_failures_at_the_ceiling_cancel_and_propagate(self, make_subscription, gateway_events, gateway, notifier):
        subscription = make_subscription()

        for index in range(3):
            result = gateway_events.handle_event("invoice.payment_failed", invoice(f"in_{index}"))

        assert result.status is S.CANCELLED
        assert result.consecutive_failure_count == 3
        assert gateway.actions == [("cancel", "sub_123")]
        assert notifier.types(subscription.id)[-2:] == ["payment_failed", "cancelled"]

    def test_nested_subscription_reference(self, make_subscription, gateway_events, store):
        subscription = make_subscription()
        nested = invoice("in_1", subscription=None, parent={"subscription_details": {"subscription": "sub_123"}})

        gateway_events.handle_event("invoice.payment_succeeded", nested)

        assert len(store.get_payments(subscription.id, 10)) == 1

    def test_failure_on_paused_subscription_is_ignored(
        self, make_subscription, gateway_events, subscription_service, store
    ):
        subscription = make_subscription()
        subscription_service.pause(subscription.id)

        gateway_events.handle_event("invoice.payment_failed", invoice("in_1"))

        assert store.get_subscription(subscription.id).status is S.PAUSED
        assert store.get_payments(subscription.id, 10) == []


class TestSubscriptionEvents:
    def test_unpaid_is_reached_from_past_due(self, make_subscription, gateway_events, notifier):
        subscription = make_subscription()
        gateway_events.handle_event("invoice.payment_failed", invoice("in_1"))

        unpaid = gateway_events.handle_event("customer.subscription.updated", {"id": "sub_123", "status": "unpaid"})

        assert unpaid.status is S.UNPAID
        event = notifier.of_type("status_changed")[0]
        assert event.payload == {"previous_status": "past_due", "status": "unpaid"}

        active = gateway_events.handle_event("invoice.payment_succeeded", invoice("in_2"))
        assert active.status is S.ACTIVE
        assert notifier.types(subscription.id)[-1] == "payment_succeeded"

    def test_illegal_or_unknown_status_is_ignored(self, make_subscription, gateway_events, store):
        subscription = make_subscription()

        gateway_events.handle_event("customer.subscription.updated", {"id": "sub_123", "status": "incomplete"})
        assert gateway_events.handle_event("customer.subscription.updated", {"id": "sub_123", "status": "weird"}) is None

        assert store.get_subscription(subscription.id).status is S.ACTIVE
        assert [entry.action for entry in store.get_history(subscription.id, 10)] == ["created"]

    def test_gateway_pause_and_resume(self, make_subscription, gateway_events, gateway, notifier):
        trial = make_subscription(trial_ends_at=None)

        paused = gateway_events.handle_event("customer.subscription.updated", {"id": "sub_123", "status": "paused"})
        assert paused.status is S.PAUSED
        assert paused.pre_pause_status is S.ACTIVE

        resumed = gateway_events.handle_event("customer.subscription.updated", {"id": "sub_123", "status": "active"})
        assert resumed.status is S.ACTIVE
        assert resumed.pre_pause_status is None
        assert notifier.types(trial.id)[-2:] == ["paused", "resumed"]
        assert gateway.actions == []

    def test_deleted_cancels_without_calling_back(self, make_subscription, gateway_events, gateway, store, clock):
        subscription = make_subscription()

        gateway_events.handle_event("customer.subscription.deleted", {"id": "sub_123", "status": "canceled"})
        gateway_events.handle_event("customer.subscription.deleted", {"id": "sub_123", "status": "canceled"})

        cancelled = store.get_subscription(subscription.id)
        assert cancelled.status is S.CANCELLED
        assert cancelled.cancelled_at == clock()
        assert cancelled.cancellation_reason == "Cancelled at payment gateway"
        assert [entry.action for entry in store.get_history(subscription.id, 10)].count("cancelled") == 1
        assert gateway.actions == []

    def test_trial_will_end_notifies_once(self, make_subscription, gateway_events, notifier, clock):
        make_subscription(trial_ends_at=clock() + timedelta(days=3))

        gateway_events.handle_event("customer.subscription.trial_will_end", {"id": "sub_123"})
        gateway_events.handle_event("customer.subscription.trial_will_end", {"id": "sub_123"})

        assert len(notifier.of_type("trial_ending")) == 1


class TestRouting:
    def test_unknown_subscription_and_event_are_ignored(self, make_subscription, gateway_events, store):
        subscription = make_subscription()

        assert gateway_events.handle_event("customer.subscription.deleted", {"id": "sub_unknown"}) is None
        assert gateway_events.handle_event("charge.refunded", {"id": "ch_1"}) is None
        assert store.get_subscription(subscription.id).status is S.ACTIVE

    def test_leased_subscription_is_retried_later(self, make_subscription, gateway_events, store, clock):
        subscription = make_subscription()
        store.claim_subscription(subscription.id, "renewal-worker", clock(), clock() + timedelta(minutes=5))

        with pytest.raises(LeaseUnavailable):
            gateway_events.handle_event("customer.subscription.deleted", {"id": "sub_123"})
        assert store.get_subscription(subscription.id).status is S.ACTIVE
