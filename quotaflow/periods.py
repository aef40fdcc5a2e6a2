"""
Period windows for usage counters.

Every function here is a pure function of the timestamp it is given, so
callers (and tests) can pin time by passing `as_of`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple, Union

from quotaflow.limits import PeriodType, Resource, resources_for_meter


@dataclass(frozen=True)
class PeriodKey:
    """A half-open UTC window [start, end)."""
    period_type: PeriodType
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        moment = ensure_utc(moment)
        return self.start <= moment < self.end

    def is_closed(self, as_of: datetime) -> bool:
        return ensure_utc(as_of) >= self.end


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(moment: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _coerce_period_type(period_type: Union[str, PeriodType]) -> PeriodType:
    try:
        return PeriodType(period_type)
    except ValueError:
        raise ValueError(f"Unknown period type: {period_type!r}") from None


def _add_months(moment: datetime, months: int) -> datetime:
    index = moment.year * 12 + (moment.month - 1) + months
    return moment.replace(year=index // 12, month=index % 12 + 1)


def _window_start(period_type: PeriodType, as_of: datetime) -> datetime:
    midnight = as_of.replace(hour=0, minute=0, second=0, microsecond=0)
    if period_type == PeriodType.DAILY:
        return midnight
    if period_type == PeriodType.MONTHLY:
        return midnight.replace(day=1)
    return midnight.replace(month=1, day=1)


def _shift(period_type: PeriodType, start: datetime, steps: int) -> datetime:
    if period_type == PeriodType.DAILY:
        return start + timedelta(days=steps)
    if period_type == PeriodType.MONTHLY:
        return _add_months(start, steps)
    return start.replace(year=start.year + steps)


def resolve_window(
    resource: Optional[Union[str, Resource]],
    period_type: Union[str, PeriodType],
    as_of: datetime,
) -> Tuple[datetime, datetime]:
    """
    Compute the window containing `as_of`.

    Args:
        resource: Resource being tracked. Windows do not depend on it; it is
            accepted so call sites read the same as the ledger's.
        period_type: daily, monthly or yearly.
        as_of: Reference timestamp.

    Returns:
        (period_start, period_end), half-open, in UTC.

    Raises:
        ValueError: If period_type is not recognised.
    """
    ptype = _coerce_period_type(period_type)
    as_of = ensure_utc(as_of)
    start = _window_start(ptype, as_of)
    return start, _shift(ptype, start, 1)


def period_key(period_type: Union[str, PeriodType], as_of: datetime) -> PeriodKey:
    """The PeriodKey for the window containing `as_of`."""
    ptype = _coerce_period_type(period_type)
    start, end = resolve_window(None, ptype, as_of)
    return PeriodKey(ptype, start, end)


def previous_windows(
    period_type: Union[str, PeriodType],
    as_of: datetime,
    count: int,
) -> List[PeriodKey]:
    """The `count` closed windows before the one containing `as_of`, newest first."""
    ptype = _coerce_period_type(period_type)
    current = period_key(ptype, as_of)
    windows = []
    for step in range(1, count + 1):
        start = _shift(ptype, current.start, -step)
        windows.append(PeriodKey(ptype, start, _shift(ptype, start, 1)))
    return windows


def windows_between(
    period_type: Union[str, PeriodType],
    start: datetime,
    end: datetime,
) -> List[PeriodKey]:
    """Every full window lying inside [start, end), oldest first."""
    ptype = _coerce_period_type(period_type)
    start = ensure_utc(start)
    end = ensure_utc(end)
    key = period_key(ptype, start)
    if key.start < start:
        key = PeriodKey(ptype, key.end, _shift(ptype, key.end, 1))

    windows = []
    while key.end <= end:
        windows.append(key)
        key = PeriodKey(ptype, key.end, _shift(ptype, key.end, 1))
    return windows


def tracked_windows(resource: Resource) -> List[Tuple[Resource, PeriodType]]:
    """Every (resource, period type) pair sharing this resource's meter.

    filesDaily and filesMonthly both count uploads, so checking either one
    yields both windows.
    """
    return [(r, r.period_type) for r in resources_for_meter(resource.meter)]
