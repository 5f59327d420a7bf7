"""Applies a failed charge to a subscription: past_due, then retry or cancel."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from . import state_machine
from .models import HistoryEntry, Subscription, SubscriptionStatus
from .retry_policy import Retry, RetryPolicy


@dataclass(slots=True)
class FailureOutcome:
    history: List[HistoryEntry] = field(default_factory=list)
    retry_at: Optional[datetime] = None
    terminated: bool = False


def apply_payment_failure(
    subscription: Subscription,
    *,
    reason: str,
    policy: RetryPolicy,
    actor: str,
    at: datetime,
) -> FailureOutcome:
    """
    Count the failure and either schedule the retry or cancel at the ceiling.

    Writes a ``payment_failed`` entry (a transition to past_due, or a note when
    already past_due) and, when the ceiling is reached, a ``cancelled`` entry.
    The failure count stays at the ceiling after cancellation.
    """
    subscription.consecutive_failure_count += 1
    failures = subscription.consecutive_failure_count
    outcome = FailureOutcome()

    note = f"Payment failed ({failures}/{policy.ceiling}): {reason}"
    if subscription.status is SubscriptionStatus.PAST_DUE:
        outcome.history.append(
            state_machine.record_note(subscription, action="payment_failed", note=note, actor=actor, at=at)
        )
    else:
        outcome.history.append(
            state_machine.apply_transition(
                subscription, SubscriptionStatus.PAST_DUE, action="payment_failed", note=note, actor=actor, at=at
            )
        )

    decision = policy.decide(failures)
    if isinstance(decision, Retry):
        outcome.retry_at = at + timedelta(days=decision.after_days)
        subscription.next_charge_at = outcome.retry_at
    else:
        cancel_reason = f"Cancelled due to {failures} consecutive payment failures (exceeded retry ceiling)"
        outcome.history.append(state_machine.mark_cancelled(subscription, reason=cancel_reason, actor=actor, at=at))
        outcome.terminated = True
    return outcome
