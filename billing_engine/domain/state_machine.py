"""Legal subscription status transitions, independent of storage."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from .errors import InvalidState
from .models import HistoryEntry, Subscription, SubscriptionStatus
from .models.subscription import TERMINAL_STATUSES

S = SubscriptionStatus

TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    S.TRIALING: frozenset({S.ACTIVE, S.PAST_DUE, S.PAUSED, S.CANCELLED}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.PAUSED, S.CANCELLED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.UNPAID, S.CANCELLED}),
    S.PAUSED: frozenset({S.ACTIVE, S.TRIALING, S.CANCELLED}),
    S.UNPAID: frozenset({S.ACTIVE, S.CANCELLED}),
    S.INCOMPLETE: frozenset({S.ACTIVE, S.CANCELLED, S.INCOMPLETE_EXPIRED}),
    S.CANCELLED: frozenset(),
    S.INCOMPLETE_EXPIRED: frozenset(),
}

PAUSABLE_STATUSES = frozenset({S.ACTIVE, S.TRIALING})

# Statuses that keep billing until the period boundary when a cancellation is scheduled.
SCHEDULABLE_CANCEL_STATUSES = frozenset({S.ACTIVE, S.TRIALING, S.PAST_DUE, S.PAUSED})


def initial_status(
    trial_ends_at: Optional[datetime],
    now: datetime,
    *,
    collect_initial_payment: bool = False,
) -> SubscriptionStatus:
    if collect_initial_payment:
        return S.INCOMPLETE
    if trial_ends_at is not None and trial_ends_at > now:
        return S.TRIALING
    return S.ACTIVE


def is_terminal(status: SubscriptionStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(source: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in TRANSITIONS[source]


def can_pause(subscription: Subscription) -> bool:
    return subscription.status in PAUSABLE_STATUSES


def can_resume(subscription: Subscription) -> bool:
    return subscription.status is S.PAUSED


def can_cancel(subscription: Subscription) -> bool:
    return not subscription.is_terminal()


def ensure_transition(source: SubscriptionStatus, target: SubscriptionStatus) -> None:
    if not can_transition(source, target):
        raise InvalidState(f"Cannot move subscription from {source.value} to {target.value}.")


def apply_transition(
    subscription: Subscription,
    target: SubscriptionStatus,
    *,
    action: str,
    note: str,
    actor: str,
    at: datetime,
) -> HistoryEntry:
    """Move ``subscription`` to ``target`` and return the history entry describing it.

    The entry is not persisted here; callers write it together with the
    updated subscription so a rejected or failed write leaves no trace.
    """
    ensure_transition(subscription.status, target)
    subscription.status = target
    subscription.updated_at = at
    if target in TERMINAL_STATUSES:
        subscription.next_charge_at = None
    return HistoryEntry(
        subscription_id=subscription.id,
        action=action,
        note=note,
        actor=actor,
        created_at=at,
    )


def record_note(subscription: Subscription, *, action: str, note: str, actor: str, at: datetime) -> HistoryEntry:
    """History entry for an event that does not change the status."""
    subscription.updated_at = at
    return HistoryEntry(
        subscription_id=subscription.id,
        action=action,
        note=note,
        actor=actor,
        created_at=at,
    )


def mark_cancelled(
    subscription: Subscription,
    *,
    reason: str,
    actor: str,
    at: datetime,
    cancelled_at: Optional[datetime] = None,
) -> HistoryEntry:
    """Move to ``cancelled`` and clear everything that only matters while billing continues."""
    note = "Subscription cancelled."
    if reason:
        note += f" Reason: {reason}"
    entry = apply_transition(subscription, S.CANCELLED, action="cancelled", note=note, actor=actor, at=at)
    subscription.cancelled_at = cancelled_at or at
    subscription.cancellation_reason = reason or None
    subscription.cancel_at_period_end = False
    subscription.pre_pause_status = None
    return entry
