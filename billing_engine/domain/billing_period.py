"""Calendar arithmetic for billing boundaries."""

from __future__ import annotations

from datetime import datetime
from typing import Tuple

from dateutil.relativedelta import relativedelta

from .models.subscription import CadenceUnit


def next_boundary(anchor: datetime, unit: CadenceUnit, count: int) -> datetime:
    """Return ``anchor`` advanced by ``count`` calendar units.

    Month and year arithmetic clamps the day of month to the length of the
    target month (Jan 31 + 1 month is Feb 28/29, never Mar 3).
    """
    unit = CadenceUnit(unit)
    if unit is CadenceUnit.DAY:
        return anchor + relativedelta(days=count)
    if unit is CadenceUnit.WEEK:
        return anchor + relativedelta(weeks=count)
    if unit is CadenceUnit.MONTH:
        return anchor + relativedelta(months=count)
    return anchor + relativedelta(years=count)


def period_bounds(
    anchor: datetime,
    unit: CadenceUnit,
    count: int,
    index: int,
) -> Tuple[datetime, datetime]:
    """Window ``[start, end)`` of the ``index``-th period counted from ``anchor``.

    Boundaries are always computed from the anchor so a month-end anchor
    keeps its day (Jan 31, Feb 28, Mar 31) instead of drifting.
    """
    start = next_boundary(anchor, unit, count * (index - 1))
    end = next_boundary(anchor, unit, count * index)
    return start, end
