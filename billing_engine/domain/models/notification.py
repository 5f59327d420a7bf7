from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True, slots=True)
class NotificationEvent:
    """Lifecycle event handed to the notification dispatcher."""

    event_type: str
    subscription_id: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)
