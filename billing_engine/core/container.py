from dataclasses import dataclass

from ..application.services.customer_service import CustomerService
from ..application.services.gateway_events import GatewayEventService
from ..application.services.gateway_sync import GatewaySync
from ..application.services.renewal_orchestrator import RenewalOrchestrator
from ..application.services.renewal_scheduler import RenewalScheduler
from ..application.services.subscription_service import SubscriptionService
from .config import Settings
from ..domain.ports.notifications import NotificationDispatcher
from ..domain.ports.payments import PaymentGateway
from ..domain.ports.persistence import BillingStore


@dataclass(slots=True)
class ApplicationContainer:
    """Dependency registry shared across the FastAPI application lifecycle."""

    settings: Settings
    persistence: BillingStore
    payment_gateway: PaymentGateway
    notifier: NotificationDispatcher
    gateway_sync: GatewaySync
    customer_service: CustomerService
    subscription_service: SubscriptionService
    gateway_event_service: GatewayEventService
    renewal_orchestrator: RenewalOrchestrator
    renewal_scheduler: RenewalScheduler
