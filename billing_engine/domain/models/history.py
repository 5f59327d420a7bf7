"""Append-only audit records written for every lifecycle transition and settlement."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    subscription_id: str
    action: str
    note: str
    actor: str
    created_at: datetime
    id: Optional[int] = None


class PaymentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class PaymentRecord:
    subscription_id: str
    amount: Decimal
    currency: str
    outcome: PaymentOutcome
    gateway_reference: Optional[str]
    created_at: datetime
    failure_reason: Optional[str] = None
    id: Optional[int] = None
