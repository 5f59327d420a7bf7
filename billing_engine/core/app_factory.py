from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from fastapi import FastAPI

from .config import Settings
from .container import ApplicationContainer
from .logging import configure_logging
from ..application.services.customer_service import CustomerService
from ..application.services.gateway_events import GatewayEventService
from ..application.services.gateway_sync import GatewaySync
from ..application.services.leasing import SubscriptionLeases
from ..application.services.renewal_orchestrator import RenewalOrchestrator
from ..application.services.renewal_scheduler import RenewalScheduler
from ..application.services.subscription_service import SubscriptionService
from ..domain.clock import utcnow
from ..domain.retry_policy import RetryPolicy
from ..infrastructure.gateways.stripe_gateway import StripePaymentGateway
from ..infrastructure.persistence.sqlite import SQLitePersistence
from ..presentation.api.routers import customers as customers_router
from ..presentation.api.routers import renewals as renewals_router
from ..presentation.api.routers import subscriptions as subscriptions_router
from ..presentation.api.routers import webhooks as webhooks_router
from ..services.email_service import EmailNotificationDispatcher

logger = logging.getLogger(__name__)


def create_application() -> FastAPI:
    settings = Settings()

    app = FastAPI(title="Subscription Billing Engine", lifespan=_create_lifespan(settings))

    app.include_router(customers_router.router)
    app.include_router(subscriptions_router.router)
    app.include_router(renewals_router.router)
    app.include_router(webhooks_router.router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        container: ApplicationContainer = app.state.container  # type: ignore[attr-defined]
        return {
            "ok": True,
            "stripe_configured": container.payment_gateway.is_configured(),
            "email_enabled": container.notifier.enabled,
        }

    return app


def build_container(settings: Settings) -> ApplicationContainer:
    """Wire the store, adapters and services described by ``settings``."""
    persistence = SQLitePersistence(settings.database_path)
    clock = utcnow
    gateway = StripePaymentGateway(settings.stripe_secret_key)
    notifier = EmailNotificationDispatcher(
        persistence,
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_username=settings.smtp_username,
        smtp_password=settings.smtp_password,
        from_email=settings.smtp_from_email,
        from_name=settings.smtp_from_name,
    )
    leases = SubscriptionLeases(persistence, clock, settings.lease_ttl_seconds)
    gateway_sync = GatewaySync(persistence, gateway, leases)
    customer_service = CustomerService(persistence, clock)
    subscription_service = SubscriptionService(persistence, gateway_sync, notifier, leases, clock)
    retry_policy = RetryPolicy(settings.max_payment_failures, settings.payment_retry_delay_days)
    gateway_event_service = GatewayEventService(persistence, gateway_sync, notifier, leases, retry_policy, clock)
    orchestrator = RenewalOrchestrator(
        persistence,
        gateway,
        notifier,
        leases,
        retry_policy,
        clock,
        gateway_timeout=settings.gateway_timeout_seconds,
        gateway_sync=gateway_sync,
    )
    scheduler = RenewalScheduler(
        persistence,
        orchestrator,
        subscription_service,
        notifier,
        clock,
        batch_size=settings.renewal_batch_size,
        item_delay=settings.renewal_item_delay,
        max_workers=settings.renewal_workers,
        interval_seconds=settings.renewal_interval_seconds,
        trial_reminder_days=settings.trial_reminder_days,
        incomplete_expiry_hours=settings.incomplete_expiry_hours,
    )
    if not gateway.is_configured():
        logger.warning("STRIPE_SECRET_KEY not set; gateway-backed renewals will fail.")
    return ApplicationContainer(
        settings=settings,
        persistence=persistence,
        payment_gateway=gateway,
        notifier=notifier,
        gateway_sync=gateway_sync,
        customer_service=customer_service,
        subscription_service=subscription_service,
        gateway_event_service=gateway_event_service,
        renewal_orchestrator=orchestrator,
        renewal_scheduler=scheduler,
    )


def _create_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging()
        container = build_container(settings)
        app.state.container = container  # type: ignore[attr-defined]

        await container.renewal_scheduler.start()
        try:
            yield
        finally:
            await container.renewal_scheduler.stop()
            container.persistence.close()

    return lifespan
