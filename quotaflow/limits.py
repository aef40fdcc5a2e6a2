"""
Limit values and the metered resource registry.

Plans persist limits as raw integers (-1 unlimited, 0 disabled, n > 0 cap).
Everything inside quotaflow works with the tagged Limit type instead, so the
sentinels never take part in arithmetic.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Union


UNLIMITED_RAW = -1
DISABLED_RAW = 0


class LimitKind(str, Enum):
    UNLIMITED = "unlimited"
    DISABLED = "disabled"
    BOUNDED = "bounded"


@dataclass(frozen=True)
class Limit:
    """A tagged plan limit: Unlimited, Disabled or Bounded(n)."""
    kind: LimitKind
    value: Optional[int] = None

    @classmethod
    def unlimited(cls) -> "Limit":
        return cls(LimitKind.UNLIMITED)

    @classmethod
    def disabled(cls) -> "Limit":
        return cls(LimitKind.DISABLED)

    @classmethod
    def bounded(cls, value: int) -> "Limit":
        if value <= 0:
            raise ValueError(f"bounded limit must be positive, got {value}")
        return cls(LimitKind.BOUNDED, int(value))

    @classmethod
    def from_raw(cls, raw: int) -> "Limit":
        """Decode a persisted limit.

        Raises:
            ValueError: If raw is below -1.
        """
        if raw == UNLIMITED_RAW:
            return cls.unlimited()
        if raw == DISABLED_RAW:
            return cls.disabled()
        if raw < UNLIMITED_RAW:
            raise ValueError(f"invalid raw limit {raw}")
        return cls.bounded(raw)

    def to_raw(self) -> int:
        if self.kind == LimitKind.UNLIMITED:
            return UNLIMITED_RAW
        if self.kind == LimitKind.DISABLED:
            return DISABLED_RAW
        return self.value

    @property
    def is_unlimited(self) -> bool:
        return self.kind == LimitKind.UNLIMITED

    @property
    def is_disabled(self) -> bool:
        return self.kind == LimitKind.DISABLED

    @property
    def is_bounded(self) -> bool:
        return self.kind == LimitKind.BOUNDED

    def allows(self, consumed: float, requested: float) -> bool:
        """True if consumed + requested fits under this limit."""
        if self.is_unlimited:
            return True
        if self.is_disabled:
            return False
        return round(consumed + requested, 2) <= self.value

    def remaining(self, consumed: float) -> Optional[float]:
        """Units left in the period. None means unlimited."""
        if self.is_unlimited:
            return None
        if self.is_disabled:
            return 0.0
        return max(0.0, self.value - consumed)

    def utilization(self, consumed: float) -> float:
        """consumed / limit. Unlimited counts as 0, disabled as 0."""
        if not self.is_bounded:
            return 0.0
        return consumed / self.value

    def accommodates(self, amount: float) -> bool:
        """True if a whole period's worth of `amount` fits under this limit."""
        if self.is_unlimited:
            return True
        if self.is_disabled:
            return amount <= 0
        return self.value >= amount

    def covers(self, other: "Limit") -> bool:
        """True if this limit is at least as generous as `other`."""
        if self.is_unlimited:
            return True
        if other.is_unlimited:
            return False
        if other.is_disabled:
            return True
        if self.is_disabled:
            return False
        return self.value >= other.value

    def __str__(self) -> str:
        if self.is_unlimited:
            return "Unlimited"
        if self.is_disabled:
            return "Disabled"
        return str(self.value)


class PeriodType(str, Enum):
    """Window granularities a resource can be tracked at."""
    DAILY = "daily"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class ResourceKind(str, Enum):
    CUMULATIVE = "cumulative"  # running total per period
    CONCURRENT = "concurrent"  # simultaneous in-flight jobs
    PER_UNIT = "per_unit"      # cap on a single unit of work


class Resource(str, Enum):
    """Limit keys a plan can carry."""
    TRANSCRIPTIONS = "transcriptions"
    FILES_DAILY = "filesDaily"
    FILES_MONTHLY = "filesMonthly"
    CONCURRENT_JOBS = "concurrentJobs"
    VOICE_SYNTHESIS = "voiceSynthesis"
    EXPORTS = "exports"
    AUDIO_DURATION_MINUTES = "audioDurationMinutes"

    @property
    def info(self) -> "ResourceInfo":
        return RESOURCE_INFO[self]

    @property
    def meter(self) -> str:
        return RESOURCE_INFO[self].meter

    @property
    def period_type(self) -> PeriodType:
        return RESOURCE_INFO[self].period_type

    @property
    def kind(self) -> ResourceKind:
        return RESOURCE_INFO[self].kind


@dataclass(frozen=True)
class ResourceInfo:
    """How a resource is counted."""
    meter: str
    period_type: PeriodType
    kind: ResourceKind
    label: str


RESOURCE_INFO: Dict[Resource, ResourceInfo] = {
    Resource.TRANSCRIPTIONS: ResourceInfo(
        "transcriptions", PeriodType.MONTHLY, ResourceKind.CUMULATIVE, "transcriptions"),
    Resource.FILES_DAILY: ResourceInfo(
        "files", PeriodType.DAILY, ResourceKind.CUMULATIVE, "daily file uploads"),
    Resource.FILES_MONTHLY: ResourceInfo(
        "files", PeriodType.MONTHLY, ResourceKind.CUMULATIVE, "monthly file uploads"),
    Resource.CONCURRENT_JOBS: ResourceInfo(
        "concurrentJobs", PeriodType.MONTHLY, ResourceKind.CONCURRENT, "concurrent jobs"),
    Resource.VOICE_SYNTHESIS: ResourceInfo(
        "voiceSynthesis", PeriodType.MONTHLY, ResourceKind.CUMULATIVE, "voice synthesis calls"),
    Resource.EXPORTS: ResourceInfo(
        "exports", PeriodType.MONTHLY, ResourceKind.CUMULATIVE, "export operations"),
    Resource.AUDIO_DURATION_MINUTES: ResourceInfo(
        "audioMinutes", PeriodType.MONTHLY, ResourceKind.PER_UNIT, "audio minutes per file"),
}


def parse_resource(value: Union[str, Resource]) -> Optional[Resource]:
    """Map a resource name to a Resource, or None if it is unknown."""
    if isinstance(value, Resource):
        return value
    try:
        return Resource(value)
    except ValueError:
        return None


def resources_for_meter(meter: str) -> List[Resource]:
    """All resources recorded under the same counter, in declaration order."""
    return [r for r, info in RESOURCE_INFO.items() if info.meter == meter]


def decode_limits(raw: Dict[str, int]) -> Dict[Resource, Limit]:
    """Decode a persisted limit map, dropping unknown resource names."""
    limits: Dict[Resource, Limit] = {}
    for name, value in raw.items():
        resource = parse_resource(name)
        if resource is None:
            continue
        limits[resource] = Limit.from_raw(int(value))
    return limits
