"""
Usage Ledger.

Holds one counter per (subject, meter, period window). Quantities are kept as
integer hundredths so that fractional minutes add up exactly.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Union
import logging

from quotaflow.limits import Resource
from quotaflow.models import UsageCounter
from quotaflow.periods import PeriodKey, ensure_utc, utc_now
from quotaflow.storage import InMemoryStorage, StorageBackend

logger = logging.getLogger(__name__)

_HUNDREDTH = Decimal("0.01")


def to_units(quantity: Union[int, float, Decimal]) -> int:
    """Convert a quantity to integer hundredths, rounding half up."""
    value = Decimal(str(quantity)).quantize(_HUNDREDTH, rounding=ROUND_HALF_UP)
    return int(value * 100)


def from_units(units: int) -> float:
    return float(Decimal(units) / 100)


def _meter(resource: Union[str, Resource]) -> str:
    if isinstance(resource, Resource):
        return resource.meter
    return resource


class UsageLedger:
    """
    Atomic per-key usage counters.

    `increment` is the only write path for consumption. Counters for a new
    window are created on first write, so rollover needs no reset job.

    Example:
        ```python
        ledger = UsageLedger()
        key = period_key("monthly", now)
        ledger.increment("ws-1", Resource.TRANSCRIPTIONS, key, 1)
        ledger.peek("ws-1", Resource.TRANSCRIPTIONS, key)  # 1.0
        ```
    """

    def __init__(self, storage: Optional[StorageBackend] = None):
        self.storage = storage or InMemoryStorage()

    def increment(
        self,
        subject_id: str,
        resource: Union[str, Resource],
        key: PeriodKey,
        delta: Union[int, float, Decimal],
        now: Optional[datetime] = None,
    ) -> float:
        """
        Add `delta` to a counter.

        Args:
            subject_id: Workspace or user id.
            resource: Resource (or meter name) to record under.
            key: Period window.
            delta: Non-negative quantity. Zero is accepted.
            now: Timestamp stored as updated_at.

        Returns:
            The new consumed total.

        Raises:
            ValueError: If delta is negative.
            StorageUnavailable: If the backend cannot complete the write.
        """
        units = to_units(delta)
        if units < 0:
            raise ValueError(f"delta must not be negative, got {delta}")
        now = ensure_utc(now) if now else utc_now()
        total = self.storage.increment_counter(subject_id, _meter(resource), key, units, now)
        return from_units(total)

    def increment_windows(
        self,
        subject_id: str,
        resource: Union[str, Resource],
        keys: List[PeriodKey],
        delta: Union[int, float, Decimal],
        now: Optional[datetime] = None,
    ) -> List[float]:
        """Add `delta` to several windows of one meter in a single write.

        Either every window is incremented or none is. Totals come back in
        the order of `keys`.
        """
        units = to_units(delta)
        if units < 0:
            raise ValueError(f"delta must not be negative, got {delta}")
        now = ensure_utc(now) if now else utc_now()
        totals = self.storage.increment_counters(subject_id, _meter(resource), keys, units, now)
        return [from_units(t) for t in totals]

    def peek(self, subject_id: str, resource: Union[str, Resource], key: PeriodKey) -> float:
        """Current consumed total for a counter. Zero if it does not exist yet."""
        counter = self.storage.get_counter(subject_id, _meter(resource), key)
        return from_units(counter.consumed_units) if counter else 0.0

    def set_peak_concurrent(
        self,
        subject_id: str,
        resource: Union[str, Resource],
        key: PeriodKey,
        candidate: float,
        now: Optional[datetime] = None,
    ) -> float:
        """Raise the high-water mark to `candidate` if it is larger. Returns the peak."""
        if candidate < 0:
            raise ValueError(f"peak must not be negative, got {candidate}")
        now = ensure_utc(now) if now else utc_now()
        return self.storage.raise_peak(subject_id, _meter(resource), key, float(candidate), now)

    def get_counter(
        self, subject_id: str, resource: Union[str, Resource], key: PeriodKey
    ) -> Optional[UsageCounter]:
        return self.storage.get_counter(subject_id, _meter(resource), key)

    def history(
        self,
        subject_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[UsageCounter]:
        """Counters whose windows fall inside [since, until], oldest first."""
        return self.storage.list_counters(
            subject_id,
            since=ensure_utc(since) if since else None,
            until=ensure_utc(until) if until else None,
        )

    def closed_counters(self, subject_id: str, as_of: Optional[datetime] = None) -> List[UsageCounter]:
        """Counters whose windows ended at or before `as_of`."""
        as_of = ensure_utc(as_of) if as_of else utc_now()
        return self.storage.list_counters(subject_id, until=as_of)

    def sweep(self, before: datetime) -> int:
        """Delete counters whose window ended at or before `before`.

        Only closed windows are ever removed, so a sweep never touches a
        counter that enforcement can still read.
        """
        before = ensure_utc(before)
        now = utc_now()
        if before > now:
            before = now
        removed = self.storage.delete_counters_before(before)
        logger.info("Swept %d closed usage counters ending before %s", removed, before.isoformat())
        return removed
