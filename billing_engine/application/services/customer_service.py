from __future__ import annotations

import logging
from typing import Optional
from uuid import uuid4

from ...domain.clock import Clock
from ...domain.errors import CustomerNotFound, InvalidSpec
from ...domain.models import Customer
from ...domain.ports.persistence import CustomerRepository

logger = logging.getLogger(__name__)


class CustomerService:
    def __init__(self, store: CustomerRepository, clock: Clock) -> None:
        self._store = store
        self._clock = clock

    def create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        gateway_customer_ref: Optional[str] = None,
    ) -> Customer:
        email = (email or "").strip().lower()
        if "@" not in email or email.startswith("@") or email.endswith("@"):
            raise InvalidSpec("A valid email address is required.")
        customer = Customer(
            id=uuid4().hex,
            email=email,
            name=(name or "").strip() or None,
            gateway_customer_ref=gateway_customer_ref or None,
            created_at=self._clock(),
        )
        self._store.create_customer(customer)
        logger.info("Created customer %s", customer.id)
        return customer

    def get_customer(self, customer_id: str) -> Customer:
        customer = self._store.get_customer(customer_id)
        if customer is None:
            raise CustomerNotFound(customer_id)
        return customer
