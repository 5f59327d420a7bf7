from fastapi import Depends, Request

from .container import ApplicationContainer


def get_container(request: Request) -> ApplicationContainer:
    container = getattr(request.app.state, "container", None)
    if not container:
        raise RuntimeError("Application container not initialised.")
    return container


def get_settings(container: ApplicationContainer = Depends(get_container)):
    return container.settings


def get_customer_service(container: ApplicationContainer = Depends(get_container)):
    return container.customer_service


def get_subscription_service(container: ApplicationContainer = Depends(get_container)):
    return container.subscription_service


def get_gateway_event_service(container: ApplicationContainer = Depends(get_container)):
    return container.gateway_event_service


def get_renewal_scheduler(container: ApplicationContainer = Depends(get_container)):
    return container.renewal_scheduler
