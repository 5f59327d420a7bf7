"""Customer domain model owning one or more subscriptions."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(slots=True)
class Customer:
    id: str
    email: str
    name: Optional[str]
    gateway_customer_ref: Optional[str]
    created_at: datetime

    def __repr__(self) -> str:
        return f"<Customer id={self.id} email={self.email}>"
