"""Shared data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
import uuid

from quotaflow.errors import DenialReason
from quotaflow.limits import Limit, PeriodType, Resource, decode_limits
from quotaflow.periods import ensure_utc


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class PlanCategory(str, Enum):
    PERSONAL = "personal"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"
    CUSTOM = "custom"


class OverrideStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RecommendationReason(str, Enum):
    QUOTA_EXCEEDED = "quota-exceeded"
    FEATURE_NEEDED = "feature-needed"
    COST_OPTIMIZATION = "cost-optimization"


class RecommendationStatus(str, Enum):
    PENDING = "pending"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    DISMISSED = "dismissed"


@dataclass
class Plan:
    """A subscription tier. Limits are stored raw (-1 unlimited, 0 disabled)."""
    name: str
    code: str
    category: PlanCategory
    price_monthly: float
    limits: Dict[str, int]
    priority_level: int = 1
    allowed_file_types: List[str] = field(default_factory=list)
    version: int = 1
    supersedes: Optional[str] = None
    is_active: bool = True
    is_public: bool = True
    plan_id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    def limit(self, resource: Resource) -> Limit:
        """Limit for a resource. Absent entries are disabled."""
        raw = self.limits.get(resource.value)
        if raw is None:
            return Limit.disabled()
        return Limit.from_raw(raw)

    def decoded_limits(self) -> Dict[Resource, Limit]:
        return decode_limits(self.limits)

    @property
    def is_unlimited(self) -> bool:
        """True for a top-tier plan where every resource is unlimited."""
        return all(self.limit(r).is_unlimited for r in Resource)

    def accepts_file_type(self, file_type: str) -> bool:
        if not self.allowed_file_types or "all_supported_formats" in self.allowed_file_types:
            return True
        return file_type.lower().lstrip(".") in self.allowed_file_types


@dataclass
class Subscription:
    """Assignment of a subject to its base plan."""
    subject_id: str
    plan_id: str
    status: str = "active"
    started_at: datetime = field(default_factory=_now)


@dataclass
class CustomOverride:
    """Per-workspace limit overrides on top of a base plan."""
    workspace_id: str
    limits: Dict[str, int]
    contract_start: datetime
    contract_end: Optional[datetime] = None
    base_plan_id: Optional[str] = None
    price: Optional[float] = None
    status: OverrideStatus = OverrideStatus.PENDING
    requested_by: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    notes: Optional[str] = None
    override_id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    def in_contract(self, as_of: datetime) -> bool:
        as_of = ensure_utc(as_of)
        if as_of < ensure_utc(self.contract_start):
            return False
        return self.contract_end is None or as_of < ensure_utc(self.contract_end)

    def is_honored(self, as_of: datetime) -> bool:
        return self.status == OverrideStatus.APPROVED and self.in_contract(as_of)


@dataclass
class EffectiveLimitSet:
    """Base plan limits with an override applied. Computed, never stored."""
    subject_id: str
    base_plan: Plan
    limits: Dict[Resource, Limit]
    price: float
    as_of: datetime
    override_id: Optional[str] = None

    def limit(self, resource: Resource) -> Limit:
        return self.limits.get(resource, Limit.disabled())

    @property
    def is_unlimited(self) -> bool:
        return all(self.limit(r).is_unlimited for r in Resource)


@dataclass
class UsageCounter:
    """Consumption of one meter in one period window."""
    subject_id: str
    meter: str
    period_type: PeriodType
    period_start: datetime
    period_end: datetime
    consumed_units: int = 0  # hundredths
    peak_concurrent: float = 0.0
    updated_at: datetime = field(default_factory=_now)

    @property
    def consumed(self) -> float:
        return self.consumed_units / 100

    def is_closed(self, as_of: datetime) -> bool:
        return ensure_utc(as_of) >= self.period_end


@dataclass
class Recommendation:
    """A proposed plan change for a subject."""
    subject_id: str
    current_plan_id: str
    recommended_plan_id: str
    reason: RecommendationReason
    confidence: float
    monthly_cost_delta: float
    expires_at: datetime
    status: RecommendationStatus = RecommendationStatus.PENDING
    bottlenecks: List[str] = field(default_factory=list)
    benefits: List[str] = field(default_factory=list)
    growth_trend: str = "stable"
    periods_observed: int = 0
    recommendation_id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    def is_live(self, as_of: datetime) -> bool:
        return (
            self.status in (RecommendationStatus.PENDING, RecommendationStatus.VIEWED)
            and ensure_utc(as_of) < self.expires_at
        )


@dataclass
class Reservation:
    """Capacity held for an in-flight job until released or expired."""
    subject_id: str
    meter: str
    quantity: float
    expires_at: datetime
    released: bool = False
    token: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    def is_active(self, as_of: datetime) -> bool:
        return not self.released and ensure_utc(as_of) < self.expires_at


@dataclass
class Denial:
    """A feature-disabled denial, kept as a signal for recommendations."""
    subject_id: str
    resource: str
    timestamp: datetime = field(default_factory=_now)


@dataclass
class WindowStatus:
    """Outcome of testing one tracked window."""
    resource: Resource
    period_type: PeriodType
    period_end: datetime
    consumed: float
    limit: Limit
    allowed: bool

    @property
    def remaining(self) -> Optional[float]:
        return self.limit.remaining(self.consumed)


@dataclass
class QuotaDecision:
    """Result of an admission check."""
    allowed: bool
    subject_id: str
    resource: str
    requested: float
    reason: Optional[DenialReason] = None
    message: Optional[str] = None
    suggestion: Optional[str] = None
    remaining: Optional[float] = None
    limit: Optional[Limit] = None
    period_end: Optional[datetime] = None
    windows: List[WindowStatus] = field(default_factory=list)
    reservation_token: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "subject_id": self.subject_id,
            "resource": self.resource,
            "requested": self.requested,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "suggestion": self.suggestion,
            "remaining": self.remaining,
            "limit": self.limit.to_raw() if self.limit is not None else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "reservation_token": self.reservation_token,
        }
