"""
Pytest fixtures for the billing engine.

Provides a temporary SQLite store, a controllable clock, a scripted payment
gateway and a recording notification dispatcher, plus the wired services.
"""

import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import pytest

from billing_engine.application.services.customer_service import CustomerService
from billing_engine.application.services.gateway_events import GatewayEventService
from billing_engine.application.services.gateway_sync import GatewaySync
from billing_engine.application.services.leasing import SubscriptionLeases
from billing_engine.application.services.renewal_orchestrator import RenewalOrchestrator
from billing_engine.application.services.renewal_scheduler import RenewalScheduler
from billing_engine.application.services.subscription_service import SubscriptionService
from billing_engine.domain.errors import GatewayFailure
from billing_engine.domain.models import CadenceUnit, NotificationEvent, SubscriptionSpec
from billing_engine.domain.ports.payments import ChargeResult
from billing_engine.domain.retry_policy import RetryPolicy
from billing_engine.infrastructure.persistence.sqlite import SQLitePersistence

START = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock returning a fixed instant until advanced explicitly."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


class FakeGateway:
    """Scripted gateway: charges pop results from a queue, default success."""

    def __init__(self) -> None:
        self.results: List[Union[ChargeResult, Exception]] = []
        self.delay: float = 0.0
        self.charges: List[Dict[str, Any]] = []
        self.actions: List[tuple] = []
        self.fail_actions = False

    def script(self, *results: Union[ChargeResult, Exception]) -> None:
        self.results.extend(results)

    def charge(self, customer_ref: Optional[str], amount: Decimal, currency: str, subscription_ref: str) -> ChargeResult:
        self.charges.append(
            {
                "customer_ref": customer_ref,
                "amount": amount,
                "currency": currency,
                "subscription_ref": subscription_ref,
            }
        )
        if self.delay:
            time.sleep(self.delay)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return ChargeResult.success(f"pi_{len(self.charges)}")

    def cancel_subscription(self, subscription_ref: str, immediate: bool) -> None:
        self._record("cancel" if immediate else "cancel_at_period_end", subscription_ref)

    def pause_subscription(self, subscription_ref: str) -> None:
        self._record("pause", subscription_ref)

    def resume_subscription(self, subscription_ref: str) -> None:
        self._record("resume", subscription_ref)

    def _record(self, action: str, subscription_ref: str) -> None:
        if self.fail_actions:
            raise GatewayFailure(f"{action} rejected")
        self.actions.append((action, subscription_ref))


class RecordingDispatcher:
    def __init__(self) -> None:
        self.events: List[NotificationEvent] = []

    def dispatch(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def types(self, subscription_id: Optional[str] = None) -> List[str]:
        return [
            event.event_type
            for event in self.events
            if subscription_id is None or event.subscription_id == subscription_id
        ]

    def of_type(self, event_type: str) -> List[NotificationEvent]:
        return [event for event in self.events if event.event_type == event_type]


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store(tmp_path):
    persistence = SQLitePersistence(tmp_path / "billing.db")
    yield persistence
    persistence.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingDispatcher()


@pytest.fixture
def leases(store, clock):
    return SubscriptionLeases(store, clock, ttl_seconds=300)


@pytest.fixture
def gateway_sync(store, gateway, leases):
    return GatewaySync(store, gateway, leases)


@pytest.fixture
def customer_service(store, clock):
    return CustomerService(store, clock)


@pytest.fixture
def subscription_service(store, gateway_sync, notifier, leases, clock):
    return SubscriptionService(store, gateway_sync, notifier, leases, clock)


@pytest.fixture
def gateway_events(store, gateway_sync, notifier, leases, clock):
    return GatewayEventService(store, gateway_sync, notifier, leases, RetryPolicy(ceiling=3, delay_days=3), clock)


@pytest.fixture
def orchestrator(store, gateway, notifier, leases, clock, gateway_sync):
    return RenewalOrchestrator(
        store,
        gateway,
        notifier,
        leases,
        RetryPolicy(ceiling=3, delay_days=3),
        clock,
        gateway_timeout=1.0,
        gateway_sync=gateway_sync,
    )


@pytest.fixture
def scheduler(store, orchestrator, subscription_service, notifier, clock):
    return RenewalScheduler(
        store,
        orchestrator,
        subscription_service,
        notifier,
        clock,
        batch_size=50,
        item_delay=0,
        max_workers=1,
    )


@pytest.fixture
def customer(customer_service):
    return customer_service.create_customer("ada@example.com", name="Ada", gateway_customer_ref="cus_123")


@pytest.fixture
def make_subscription(subscription_service, customer):
    def factory(**overrides):
        values = {
            "customer_id": customer.id,
            "product_label": "Pro plan",
            "amount": Decimal("19.99"),
            "cadence_unit": CadenceUnit.MONTH,
            "gateway_subscription_ref": "sub_123",
        }
        values.update(overrides)
        return subscription_service.create(SubscriptionSpec(**values))

    return factory
