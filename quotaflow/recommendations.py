"""
Recommendation Engine.

Reads closed-period usage and proposes plan changes:

- quota-exceeded: a resource ran at or above 90% of its limit in at least
  two of the last three periods.
- feature-needed: the subject kept hitting a feature its plan disables.
- cost-optimization: every resource stayed at or below 20% of its limit and
  a cheaper plan still leaves 50% headroom over the observed peak.

All thresholds come from QuotaSettings. The engine never takes the
enforcement gate's write path; it only reads counters and the catalog.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional
import logging
import math

from quotaflow.catalog import PlanCatalog
from quotaflow.config import QuotaSettings, get_settings
from quotaflow.errors import InvalidTransition, NotFoundError, StorageUnavailable
from quotaflow.ledger import UsageLedger
from quotaflow.limits import Limit, PeriodType, Resource, ResourceKind
from quotaflow.models import (
    EffectiveLimitSet,
    Plan,
    Recommendation,
    RecommendationReason,
    RecommendationStatus,
    UsageCounter,
)
from quotaflow.periods import ensure_utc, period_key, utc_now, windows_between
from quotaflow.resolver import PlanResolver
from quotaflow.storage import InMemoryStorage, StorageBackend

logger = logging.getLogger(__name__)


# Allowed lifecycle moves
_TRANSITIONS = {
    RecommendationStatus.PENDING: {RecommendationStatus.VIEWED, RecommendationStatus.DISMISSED},
    RecommendationStatus.VIEWED: {RecommendationStatus.ACCEPTED, RecommendationStatus.DISMISSED},
    RecommendationStatus.ACCEPTED: set(),
    RecommendationStatus.DISMISSED: set(),
}


@dataclass
class ResourceUsage:
    """Per-period usage of one resource over the analysis window."""
    resource: Resource
    limit: Limit
    values: List[float]

    @property
    def peak(self) -> float:
        return max(self.values) if self.values else 0.0

    @property
    def utilizations(self) -> List[float]:
        return [self.limit.utilization(v) for v in self.values]


def growth_trend(totals: List[float]) -> str:
    """Classify the newest period against the mean of the earlier ones."""
    if len(totals) < 2:
        return "stable"
    earlier = totals[:-1]
    baseline = sum(earlier) / len(earlier)
    latest = totals[-1]
    if baseline == 0:
        return "rapid" if latest > 0 else "stable"
    ratio = latest / baseline
    if ratio >= 1.5:
        return "rapid"
    if ratio >= 1.2:
        return "steady"
    if ratio >= 1.05:
        return "slow"
    if ratio < 0.8:
        return "declining"
    return "stable"


class RecommendationEngine:
    """
    Proposes upgrades and downgrades from usage history.

    Example:
        ```python
        engine = RecommendationEngine(storage)
        rec = engine.analyze("ws-1")
        if rec:
            print(rec.reason, rec.recommended_plan_id, rec.confidence)
        ```
    """

    def __init__(
        self,
        storage: Optional[StorageBackend] = None,
        catalog: Optional[PlanCatalog] = None,
        settings: Optional[QuotaSettings] = None,
    ):
        self.storage = storage or (catalog.storage if catalog else InMemoryStorage())
        self.catalog = catalog or PlanCatalog(self.storage)
        self.ledger = UsageLedger(self.storage)
        self.resolver = PlanResolver(self.catalog)
        self._settings = settings

    @property
    def settings(self) -> QuotaSettings:
        return self._settings or get_settings()

    # =========================================================================
    # Analysis
    # =========================================================================

    def analyze(
        self,
        subject_id: str,
        window_days: int = 90,
        as_of: Optional[datetime] = None,
    ) -> Optional[Recommendation]:
        """
        Analyze closed periods and persist a recommendation if one applies.

        Returns the existing live recommendation unchanged when it already
        proposes the same plan. A different candidate supersedes it.

        Args:
            subject_id: Workspace or user id.
            window_days: How far back to look.
            as_of: Analysis instant (default: now).

        Returns:
            Recommendation, or None if no rule fires.
        """
        as_of = ensure_utc(as_of) if as_of else utc_now()
        limits = self.resolver.effective_limits(subject_id, as_of)
        if limits.is_unlimited:
            return None

        # whole months, so a window starting mid-month still sees that month
        since = period_key(PeriodType.MONTHLY, as_of - timedelta(days=window_days)).start
        counters = self.ledger.history(subject_id, since=since, until=as_of)
        usage, periods = self._usage(counters, limits, as_of)
        if periods < self.settings.min_history_periods:
            return None

        candidate = (
            self._quota_exceeded(subject_id, usage, periods, limits, as_of)
            or self._feature_needed(subject_id, usage, periods, limits, since, as_of)
            or self._cost_optimization(subject_id, usage, periods, limits, as_of)
        )
        if candidate is None:
            return None
        candidate.growth_trend = growth_trend(self._monthly_totals(usage))
        return self._persist(candidate, as_of)

    def _usage(
        self, counters: List[UsageCounter], limits: EffectiveLimitSet, as_of: datetime
    ) -> tuple:
        anchors: Dict[PeriodType, datetime] = {}
        for c in counters:
            if c.period_type not in anchors or c.period_start < anchors[c.period_type]:
                anchors[c.period_type] = c.period_start

        by_key = {(c.meter, c.period_type, c.period_start): c for c in counters}
        usage: Dict[Resource, ResourceUsage] = {}
        for resource in Resource:
            limit = limits.limit(resource)
            if limit.is_disabled:
                continue
            anchor = anchors.get(resource.period_type)
            values: List[float] = []
            if anchor is not None:
                for window in windows_between(resource.period_type, anchor, as_of):
                    counter = by_key.get((resource.meter, resource.period_type, window.start))
                    values.append(self._value(counter, resource))
            usage[resource] = ResourceUsage(resource, limit, values)

        monthly = anchors.get(PeriodType.MONTHLY)
        periods = len(windows_between(PeriodType.MONTHLY, monthly, as_of)) if monthly else 0
        return usage, periods

    @staticmethod
    def _value(counter: Optional[UsageCounter], resource: Resource) -> float:
        if counter is None:
            return 0.0
        if resource.kind == ResourceKind.CUMULATIVE:
            return counter.consumed
        return counter.peak_concurrent

    @staticmethod
    def _monthly_totals(usage: Dict[Resource, ResourceUsage]) -> List[float]:
        series = [
            u.values for u in usage.values()
            if u.resource.period_type == PeriodType.MONTHLY
            and u.resource.kind == ResourceKind.CUMULATIVE
            and u.values
        ]
        if not series:
            return []
        length = max(len(s) for s in series)
        totals = [0.0] * length
        for s in series:
            offset = length - len(s)
            for i, v in enumerate(s):
                totals[offset + i] += v
        return totals

    def _confidence(self, periods: int, gap: float) -> float:
        s = self.settings
        sample = min(1.0, periods / max(1, s.lookback_periods))
        score = s.confidence_sample_weight * sample + s.confidence_gap_weight * max(0.0, min(1.0, gap))
        return round(max(0.0, min(1.0, score)), 4)

    def _keeps_peaks(self, plan: Plan, usage: Dict[Resource, ResourceUsage]) -> bool:
        return all(plan.limit(r).accommodates(u.peak) for r, u in usage.items())

    def _quota_exceeded(
        self,
        subject_id: str,
        usage: Dict[Resource, ResourceUsage],
        periods: int,
        limits: EffectiveLimitSet,
        as_of: datetime,
    ) -> Optional[Recommendation]:
        s = self.settings
        bottlenecks: List[ResourceUsage] = []
        excess: List[float] = []
        for u in usage.values():
            if not u.limit.is_bounded:
                continue
            recent = u.utilizations[-s.lookback_periods:]
            hot = [x for x in recent if x >= s.high_utilization]
            if len(hot) >= s.high_utilization_periods:
                bottlenecks.append(u)
                span = max(1e-9, 1.0 - s.high_utilization)
                excess.append((sum(hot) / len(hot) - s.high_utilization) / span)
        if not bottlenecks:
            return None

        def fits(plan: Plan) -> bool:
            for u in bottlenecks:
                limit = plan.limit(u.resource)
                if not limit.accommodates(math.ceil(u.peak * s.upgrade_headroom)):
                    return False
            return self._keeps_peaks(plan, usage)

        plan = self.catalog.cheapest(fits, exclude=limits.base_plan.plan_id)
        if plan is None:
            logger.info("No plan fits the usage of %s", subject_id)
            return None

        gap = sum(excess) / len(excess)
        return self._build(
            subject_id, limits, plan, RecommendationReason.QUOTA_EXCEEDED,
            self._confidence(periods, gap), [u.resource for u in bottlenecks], periods, as_of,
        )

    def _feature_needed(
        self,
        subject_id: str,
        usage: Dict[Resource, ResourceUsage],
        periods: int,
        limits: EffectiveLimitSet,
        since: datetime,
        as_of: datetime,
    ) -> Optional[Recommendation]:
        s = self.settings
        denials = self.storage.count_denials(subject_id, since)
        wanted: List[Resource] = []
        total = 0
        for name, count in denials.items():
            resource = next((r for r in Resource if r.value == name), None)
            if resource is None or count < s.feature_denials_threshold:
                continue
            if limits.limit(resource).is_disabled:
                wanted.append(resource)
                total += count
        if not wanted:
            return None

        def fits(plan: Plan) -> bool:
            if any(plan.limit(r).is_disabled for r in wanted):
                return False
            return self._keeps_peaks(plan, usage)

        plan = self.catalog.cheapest(fits, exclude=limits.base_plan.plan_id)
        if plan is None:
            return None
        gap = total / (2.0 * max(1, s.feature_denials_threshold))
        return self._build(
            subject_id, limits, plan, RecommendationReason.FEATURE_NEEDED,
            self._confidence(periods, gap), wanted, periods, as_of,
        )

    def _cost_optimization(
        self,
        subject_id: str,
        usage: Dict[Resource, ResourceUsage],
        periods: int,
        limits: EffectiveLimitSet,
        as_of: datetime,
    ) -> Optional[Recommendation]:
        s = self.settings
        bounded = [u for u in usage.values() if u.limit.is_bounded]
        if not bounded:
            return None
        if any(x > s.low_utilization for u in bounded for x in u.utilizations):
            return None

        def fits(plan: Plan) -> bool:
            return all(
                plan.limit(r).accommodates(u.peak * s.downgrade_margin) for r, u in usage.items()
            )

        plan = self.catalog.cheapest(fits, exclude=limits.base_plan.plan_id, max_price=limits.price)
        if plan is None:
            return None

        margins = []
        for u in bounded:
            highest = max(u.utilizations) if u.utilizations else 0.0
            margins.append((s.low_utilization - highest) / max(1e-9, s.low_utilization))
        gap = sum(margins) / len(margins)
        return self._build(
            subject_id, limits, plan, RecommendationReason.COST_OPTIMIZATION,
            self._confidence(periods, gap), [], periods, as_of,
        )

    def _build(
        self,
        subject_id: str,
        limits: EffectiveLimitSet,
        plan: Plan,
        reason: RecommendationReason,
        confidence: float,
        bottlenecks: List[Resource],
        periods: int,
        as_of: datetime,
    ) -> Recommendation:
        benefits = []
        for resource in Resource:
            old, new = limits.limit(resource), plan.limit(resource)
            if old != new:
                benefits.append(f"{resource.info.label}: {old} -> {new}")
        return Recommendation(
            subject_id=subject_id,
            current_plan_id=limits.base_plan.plan_id,
            recommended_plan_id=plan.plan_id,
            reason=reason,
            confidence=confidence,
            monthly_cost_delta=round(plan.price_monthly - limits.price, 2),
            expires_at=as_of + timedelta(days=self.settings.recommendation_ttl_days),
            bottlenecks=[r.value for r in bottlenecks],
            benefits=benefits,
            periods_observed=periods,
            created_at=as_of,
        )

    def _persist(self, candidate: Recommendation, as_of: datetime) -> Recommendation:
        live = [r for r in self.storage.list_recommendations(candidate.subject_id) if r.is_live(as_of)]
        for existing in live:
            if existing.recommended_plan_id == candidate.recommended_plan_id:
                return existing
        for existing in live:
            self.storage.save_recommendation(replace(existing, status=RecommendationStatus.DISMISSED))
            logger.info("Recommendation %s superseded", existing.recommendation_id)
        self.storage.save_recommendation(candidate)
        logger.info(
            "Recommended %s for %s (%s, confidence %.2f)",
            candidate.recommended_plan_id, candidate.subject_id,
            candidate.reason.value, candidate.confidence,
        )
        return candidate

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def current(self, subject_id: str, as_of: Optional[datetime] = None) -> Optional[Recommendation]:
        """Newest recommendation that is neither expired nor dismissed."""
        as_of = ensure_utc(as_of) if as_of else utc_now()
        recs = [
            r for r in self.storage.list_recommendations(subject_id)
            if r.status != RecommendationStatus.DISMISSED and as_of < r.expires_at
        ]
        return max(recs, key=lambda r: r.created_at) if recs else None

    def get(self, recommendation_id: str) -> Recommendation:
        rec = self.storage.get_recommendation(recommendation_id)
        if rec is None:
            raise NotFoundError(f"Unknown recommendation: {recommendation_id}")
        return rec

    def _transition(self, recommendation_id: str, target: RecommendationStatus) -> Recommendation:
        rec = self.get(recommendation_id)
        if target not in _TRANSITIONS[rec.status]:
            raise InvalidTransition("recommendation", rec.status.value, target.value)
        updated = replace(rec, status=target)
        self.storage.save_recommendation(updated)
        return updated

    def mark_viewed(self, recommendation_id: str) -> Recommendation:
        return self._transition(recommendation_id, RecommendationStatus.VIEWED)

    def accept(self, recommendation_id: str, apply_plan: bool = False) -> Recommendation:
        """Accept a viewed recommendation, optionally moving the subject to the plan."""
        rec = self._transition(recommendation_id, RecommendationStatus.ACCEPTED)
        if apply_plan:
            self.catalog.subscribe(rec.subject_id, rec.recommended_plan_id)
        return rec

    def dismiss(self, recommendation_id: str) -> Recommendation:
        return self._transition(recommendation_id, RecommendationStatus.DISMISSED)

    def set_status(self, recommendation_id: str, status: str) -> Recommendation:
        target = RecommendationStatus(status)
        if target == RecommendationStatus.ACCEPTED:
            return self.accept(recommendation_id)
        return self._transition(recommendation_id, target)

    # =========================================================================
    # Batch
    # =========================================================================

    def analyze_all(
        self,
        subject_ids: Optional[List[str]] = None,
        window_days: int = 90,
        as_of: Optional[datetime] = None,
    ) -> List[Recommendation]:
        """
        Analyze many subjects, skipping those recommended to recently.

        A subject whose analysis hits a storage fault is logged and skipped;
        the next sweep picks it up again.
        """
        as_of = ensure_utc(as_of) if as_of else utc_now()
        cooldown = as_of - timedelta(days=self.settings.recommendation_cooldown_days)
        if subject_ids is None:
            subject_ids = self.storage.list_subjects()

        created: List[Recommendation] = []
        for subject_id in subject_ids:
            recent = [r for r in self.storage.list_recommendations(subject_id) if r.created_at >= cooldown]
            if recent:
                continue
            try:
                rec = self.analyze(subject_id, window_days, as_of)
            except StorageUnavailable as exc:
                logger.error("Skipping %s in recommendation sweep: %s", subject_id, exc)
                continue
            if rec is not None:
                created.append(rec)
        logger.info("Recommendation sweep: %d of %d subjects", len(created), len(subject_ids))
        return created
