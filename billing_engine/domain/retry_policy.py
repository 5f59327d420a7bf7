"""Decides whether a failed renewal is retried or the subscription terminated."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

DEFAULT_RETRY_DELAY_DAYS = 3


@dataclass(frozen=True, slots=True)
class Retry:
    after_days: int


@dataclass(frozen=True, slots=True)
class Terminate:
    pass


RetryDecision = Union[Retry, Terminate]


def decide(failure_count: int, ceiling: int, delay_days: int = DEFAULT_RETRY_DELAY_DAYS) -> RetryDecision:
    """Flat backoff: every retry waits ``delay_days`` until ``ceiling`` failures are reached."""
    if failure_count < ceiling:
        return Retry(after_days=delay_days)
    return Terminate()


class RetryPolicy:
    """Retry decision bound to the configured ceiling and delay."""

    def __init__(self, ceiling: int, delay_days: int = DEFAULT_RETRY_DELAY_DAYS) -> None:
        if ceiling < 1:
            raise ValueError("Retry ceiling must be at least 1.")
        if delay_days < 1:
            raise ValueError("Retry delay must be at least one day.")
        self.ceiling = ceiling
        self.delay_days = delay_days

    def decide(self, failure_count: int) -> RetryDecision:
        return decide(failure_count, self.ceiling, self.delay_days)
