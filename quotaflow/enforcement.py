"""
Enforcement Gate.

Admission control in two phases: `check_quota` before the work starts (never
writes usage) and `record_usage` after it finishes. The split is a soft quota:
concurrent checks can each see the same headroom, so a burst may overshoot by
at most the number of in-flight requests. Hard admission is available for
concurrency-kind resources through reservations.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, TypeVar, Union
import logging

from quotaflow.catalog import PlanCatalog
from quotaflow.config import QuotaSettings, get_settings
from quotaflow.errors import DenialReason, StorageUnavailable
from quotaflow.ledger import UsageLedger, from_units, to_units
from quotaflow.limits import Limit, PeriodType, Resource, ResourceKind, parse_resource
from quotaflow.models import (
    Denial,
    EffectiveLimitSet,
    Plan,
    QuotaDecision,
    Reservation,
    WindowStatus,
)
from quotaflow.periods import ensure_utc, period_key, tracked_windows, utc_now
from quotaflow.resolver import PlanResolver
from quotaflow.storage import InMemoryStorage, StorageBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class UploadValidation:
    """Combined result of validating a file upload."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    decisions: List[QuotaDecision] = field(default_factory=list)


class EnforcementGate:
    """
    Real-time quota decisions for a subject and resource.

    Example:
        ```python
        gate = EnforcementGate()
        gate.catalog.seed_defaults()

        decision = gate.check_quota("ws-1", "transcriptions", 1)
        if decision.allowed:
            run_transcription()
            gate.record_usage("ws-1", "transcriptions", 1)
        else:
            print(decision.reason, decision.suggestion)
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

    def _retry(self, fn: Callable[..., T], *args, **kwargs) -> T:
        attempts = int(self.settings.storage_retries) + 1
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args, **kwargs)
            except StorageUnavailable as exc:
                if attempt == attempts:
                    raise
                logger.warning("Storage call %s failed (%s), retrying", fn.__name__, exc)
        raise AssertionError("unreachable")

    # =========================================================================
    # Admission
    # =========================================================================

    def check_quota(
        self,
        subject_id: str,
        resource: Union[str, Resource],
        requested_qty: float = 1,
        as_of: Optional[datetime] = None,
    ) -> QuotaDecision:
        """
        Decide whether `requested_qty` more units may be consumed.

        Never increments usage. Unknown resources are denied as disabled.
        Storage faults fail closed with reason storage_unavailable.

        Args:
            subject_id: Workspace or user id.
            resource: Resource name or Resource.
            requested_qty: Estimated quantity of the pending work.
            as_of: Decision instant (default: now).

        Returns:
            QuotaDecision

        Raises:
            ValueError: If requested_qty is negative.
        """
        return self._evaluate(subject_id, resource, requested_qty, as_of, record_denial=True)

    def probe(
        self,
        subject_id: str,
        resource: Union[str, Resource],
        as_of: Optional[datetime] = None,
    ) -> QuotaDecision:
        """Zero-quantity check, for progress bars. Writes nothing."""
        return self._evaluate(subject_id, resource, 0, as_of, record_denial=False)

    def _evaluate(
        self,
        subject_id: str,
        resource: Union[str, Resource],
        requested_qty: float,
        as_of: Optional[datetime],
        record_denial: bool,
    ) -> QuotaDecision:
        if requested_qty < 0:
            raise ValueError(f"requested_qty must not be negative, got {requested_qty}")
        requested = from_units(to_units(requested_qty))
        as_of = ensure_utc(as_of) if as_of else utc_now()
        name = resource.value if isinstance(resource, Resource) else str(resource)

        parsed = parse_resource(resource)
        if parsed is None:
            logger.error("check_quota called with unknown resource %r", name)
            return QuotaDecision(
                allowed=False,
                subject_id=subject_id,
                resource=name,
                requested=requested,
                reason=DenialReason.FEATURE_DISABLED,
                message=f"Unknown resource '{name}'",
                suggestion="Use one of: " + ", ".join(r.value for r in Resource),
                remaining=0.0,
                limit=Limit.disabled(),
            )

        try:
            return self._check(subject_id, parsed, requested, as_of, record_denial)
        except StorageUnavailable as exc:
            logger.error("Quota check for %s/%s failed closed: %s", subject_id, name, exc)
            return self._storage_denial(subject_id, name, requested)

    def _storage_denial(self, subject_id: str, resource: str, requested: float) -> QuotaDecision:
        return QuotaDecision(
            allowed=False,
            subject_id=subject_id,
            resource=resource,
            requested=requested,
            reason=DenialReason.STORAGE_UNAVAILABLE,
            message="Usage storage is temporarily unavailable",
            suggestion="Retry shortly",
        )

    def _check(
        self,
        subject_id: str,
        resource: Resource,
        requested: float,
        as_of: datetime,
        record_denial: bool = True,
    ) -> QuotaDecision:
        limits = self._retry(self.resolver.effective_limits, subject_id, as_of)
        pairs = tracked_windows(resource)

        for tracked, _ in pairs:
            if limits.limit(tracked).is_disabled:
                return self._disabled_denial(
                    subject_id, resource, tracked, requested, limits, as_of, record_denial
                )

        if resource.kind == ResourceKind.PER_UNIT:
            return self._check_per_unit(subject_id, resource, requested, limits, as_of)
        if resource.kind == ResourceKind.CONCURRENT:
            return self._check_concurrent(subject_id, resource, requested, limits, as_of)
        return self._check_cumulative(subject_id, resource, pairs, requested, limits, as_of)

    def _disabled_denial(
        self,
        subject_id: str,
        resource: Resource,
        disabled: Resource,
        requested: float,
        limits: EffectiveLimitSet,
        as_of: datetime,
        record_denial: bool = True,
    ) -> QuotaDecision:
        if record_denial:
            self._retry(self.storage.add_denial, Denial(subject_id, disabled.value, as_of))
        plan = self._cheapest_upgrade(limits, lambda p: not p.limit(disabled).is_disabled)
        suggestion = (
            f"Upgrade to {plan.name} to enable {disabled.info.label}"
            if plan else "Contact sales for a custom plan"
        )
        return QuotaDecision(
            allowed=False,
            subject_id=subject_id,
            resource=resource.value,
            requested=requested,
            reason=DenialReason.FEATURE_DISABLED,
            message=f"{disabled.info.label.capitalize()} not available on the {limits.base_plan.name} plan",
            suggestion=suggestion,
            remaining=0.0,
            limit=Limit.disabled(),
        )

    def _check_per_unit(
        self,
        subject_id: str,
        resource: Resource,
        requested: float,
        limits: EffectiveLimitSet,
        as_of: datetime,
    ) -> QuotaDecision:
        limit = limits.limit(resource)
        key = period_key(resource.period_type, as_of)
        if limit.allows(0, requested):
            return QuotaDecision(
                allowed=True,
                subject_id=subject_id,
                resource=resource.value,
                requested=requested,
                remaining=limit.remaining(0),
                limit=limit,
                period_end=key.end,
            )

        plan = self._cheapest_upgrade(limits, lambda p: p.limit(resource).accommodates(requested))
        return QuotaDecision(
            allowed=False,
            subject_id=subject_id,
            resource=resource.value,
            requested=requested,
            reason=DenialReason.QUOTA_EXCEEDED,
            message=f"{requested:g} exceeds the plan limit of {limit} {resource.info.label}",
            suggestion=self._upgrade_text(plan, resource),
            remaining=limit.remaining(0),
            limit=limit,
            period_end=key.end,
        )

    def _check_concurrent(
        self,
        subject_id: str,
        resource: Resource,
        requested: float,
        limits: EffectiveLimitSet,
        as_of: datetime,
    ) -> QuotaDecision:
        limit = limits.limit(resource)
        key = period_key(resource.period_type, as_of)
        active = self._retry(self.storage.reserved_quantity, subject_id, resource.meter, as_of)
        if limit.allows(active, requested):
            return QuotaDecision(
                allowed=True,
                subject_id=subject_id,
                resource=resource.value,
                requested=requested,
                remaining=limit.remaining(active),
                limit=limit,
                period_end=key.end,
            )

        plan = self._cheapest_upgrade(limits, lambda p: p.limit(resource).accommodates(active + requested))
        return QuotaDecision(
            allowed=False,
            subject_id=subject_id,
            resource=resource.value,
            requested=requested,
            reason=DenialReason.QUOTA_EXCEEDED,
            message=f"{active:g} of {limit} {resource.info.label} already running",
            suggestion=self._upgrade_text(plan, resource, "or wait for a running job to finish"),
            remaining=limit.remaining(active),
            limit=limit,
            period_end=key.end,
        )

    def _check_cumulative(
        self,
        subject_id: str,
        resource: Resource,
        pairs: List[tuple],
        requested: float,
        limits: EffectiveLimitSet,
        as_of: datetime,
    ) -> QuotaDecision:
        windows: List[WindowStatus] = []
        for tracked, ptype in pairs:
            limit = limits.limit(tracked)
            key = period_key(ptype, as_of)
            consumed = 0.0
            if not limit.is_unlimited:
                consumed = self._retry(self.ledger.peek, subject_id, tracked, key)
            windows.append(WindowStatus(
                resource=tracked,
                period_type=ptype,
                period_end=key.end,
                consumed=consumed,
                limit=limit,
                allowed=limit.allows(consumed, requested),
            ))

        bounded = [w for w in windows if w.limit.is_bounded]
        if not bounded:
            own = next(w for w in windows if w.resource == resource)
            return QuotaDecision(
                allowed=True,
                subject_id=subject_id,
                resource=resource.value,
                requested=requested,
                remaining=None,
                limit=Limit.unlimited(),
                period_end=own.period_end,
                windows=windows,
            )

        failing = [w for w in bounded if not w.allowed]
        if not failing:
            tightest = min(bounded, key=lambda w: (w.remaining, w.period_end))
            return QuotaDecision(
                allowed=True,
                subject_id=subject_id,
                resource=resource.value,
                requested=requested,
                remaining=tightest.remaining,
                limit=tightest.limit,
                period_end=tightest.period_end,
                windows=windows,
            )

        tightest = min(failing, key=lambda w: (w.remaining, w.period_end))

        def fits(plan: Plan) -> bool:
            return all(plan.limit(w.resource).accommodates(w.consumed + requested) for w in failing)

        plan = self._cheapest_upgrade(limits, fits)
        wait = f"or wait until period resets at {tightest.period_end.isoformat()}"
        logger.debug("Denied %s/%s: %s window full", subject_id, resource.value, tightest.period_type.value)
        return QuotaDecision(
            allowed=False,
            subject_id=subject_id,
            resource=resource.value,
            requested=requested,
            reason=DenialReason.QUOTA_EXCEEDED,
            message=(
                f"{tightest.period_type.value.capitalize()} limit of {tightest.limit} "
                f"{tightest.resource.info.label} reached ({tightest.consumed:g} used)"
            ),
            suggestion=self._upgrade_text(plan, tightest.resource, wait),
            remaining=tightest.remaining,
            limit=tightest.limit,
            period_end=tightest.period_end,
            windows=windows,
        )

    def _cheapest_upgrade(
        self, limits: EffectiveLimitSet, predicate: Callable[[Plan], bool]
    ) -> Optional[Plan]:
        try:
            return self.catalog.cheapest(predicate, exclude=limits.base_plan.plan_id)
        except StorageUnavailable:
            logger.warning("Could not load catalog for upgrade suggestion")
            return None

    def _upgrade_text(self, plan: Optional[Plan], resource: Resource, tail: str = "") -> str:
        if plan is None:
            text = "Contact sales for a custom plan"
        else:
            text = f"Upgrade to {plan.name} ({plan.limit(resource)} {resource.info.label})"
        return f"{text} {tail}".strip()

    # =========================================================================
    # Recording
    # =========================================================================

    def record_usage(
        self,
        subject_id: str,
        resource: Union[str, Resource],
        actual_qty: float,
        as_of: Optional[datetime] = None,
    ) -> float:
        """
        Record consumption after the work completed.

        Every window tracked under the resource's meter is incremented, so
        one upload counts toward both the daily and the monthly file limit.
        Over-consumption relative to the earlier check is accepted. A zero
        quantity is accepted (cancelled work).

        Returns:
            New consumed total in the resource's own window.

        Raises:
            ValueError: For negative quantities or unknown resources.
            StorageUnavailable: If the write fails after one retry.
        """
        if actual_qty < 0:
            raise ValueError(f"actual_qty must not be negative, got {actual_qty}")
        parsed = parse_resource(resource)
        if parsed is None:
            raise ValueError(f"Unknown resource: {resource!r}")
        as_of = ensure_utc(as_of) if as_of else utc_now()

        pairs = tracked_windows(parsed)
        keys = [period_key(ptype, as_of) for _, ptype in pairs]
        totals = self._retry(self.ledger.increment_windows, subject_id, parsed, keys, actual_qty, as_of)
        own_total = next(total for (tracked, _), total in zip(pairs, totals) if tracked == parsed)

        if parsed.kind == ResourceKind.PER_UNIT:
            key = period_key(parsed.period_type, as_of)
            self._retry(self.ledger.set_peak_concurrent, subject_id, parsed, key, actual_qty, as_of)

        self._warn_if_near_limit(subject_id, parsed, as_of)
        return own_total

    def _warn_if_near_limit(self, subject_id: str, resource: Resource, as_of: datetime) -> None:
        if resource.kind != ResourceKind.CUMULATIVE:
            return
        try:
            limits = self.resolver.effective_limits(subject_id, as_of)
            for tracked, ptype in tracked_windows(resource):
                limit = limits.limit(tracked)
                if not limit.is_bounded:
                    continue
                consumed = self.ledger.peek(subject_id, tracked, period_key(ptype, as_of))
                ratio = limit.utilization(consumed)
                if ratio >= self.settings.warning_threshold:
                    logger.warning(
                        "%s at %.0f%% of %s limit (%g of %s)",
                        subject_id, ratio * 100, tracked.info.label, consumed, limit,
                    )
        except StorageUnavailable as exc:
            logger.warning("Skipped quota warning for %s: %s", subject_id, exc)

    # =========================================================================
    # Reservations
    # =========================================================================

    def reserve(
        self,
        subject_id: str,
        resource: Union[str, Resource] = Resource.CONCURRENT_JOBS,
        quantity: float = 1,
        ttl_seconds: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ) -> QuotaDecision:
        """
        Atomically admit a concurrent job and hold its slot.

        On success the decision carries a reservation_token to pass to
        `release`. Unreleased reservations stop counting after the TTL.

        Raises:
            ValueError: If the resource is not concurrency-kind or quantity <= 0.
        """
        parsed = parse_resource(resource)
        if parsed is None or parsed.kind != ResourceKind.CONCURRENT:
            raise ValueError(f"Reservations apply to concurrency resources, not {resource!r}")
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        as_of = ensure_utc(as_of) if as_of else utc_now()
        ttl = ttl_seconds if ttl_seconds is not None else self.settings.reservation_ttl_seconds

        reservation = None
        try:
            limits = self._retry(self.resolver.effective_limits, subject_id, as_of)
            limit = limits.limit(parsed)
            if limit.is_disabled:
                return self._disabled_denial(subject_id, parsed, parsed, quantity, limits, as_of)

            candidate = Reservation(
                subject_id=subject_id,
                meter=parsed.meter,
                quantity=quantity,
                expires_at=as_of + timedelta(seconds=ttl),
                created_at=as_of,
            )
            cap = None if limit.is_unlimited else float(limit.value)
            if self._retry(self.storage.try_reserve, candidate, cap, as_of):
                reservation = candidate
            else:
                denial = self._check_concurrent(subject_id, parsed, quantity, limits, as_of)
                if denial.allowed:
                    # a slot freed up between the reservation attempt and the re-read
                    denial = replace(denial, allowed=False, reason=DenialReason.QUOTA_EXCEEDED,
                                     message="Concurrency limit reached, retry")
                return denial

            held = self._retry(self.storage.reserved_quantity, subject_id, parsed.meter, as_of)
            key = period_key(PeriodType.MONTHLY, as_of)
            self._retry(self.ledger.set_peak_concurrent, subject_id, parsed, key, held, as_of)
        except StorageUnavailable as exc:
            logger.error("Reservation for %s failed closed: %s", subject_id, exc)
            if reservation is not None:
                self._release_orphan(reservation)
            return self._storage_denial(subject_id, parsed.value, quantity)

        return QuotaDecision(
            allowed=True,
            subject_id=subject_id,
            resource=parsed.value,
            requested=quantity,
            remaining=limit.remaining(held),
            limit=limit,
            period_end=key.end,
            reservation_token=reservation.token,
        )

    def release(self, token: str) -> bool:
        """End a reservation. Returns False if it was unknown or already released."""
        return self._retry(self.storage.release_reservation, token) is not None

    def _release_orphan(self, reservation: Reservation) -> None:
        # the caller never receives this token
        try:
            self._retry(self.storage.release_reservation, reservation.token)
        except StorageUnavailable as exc:
            logger.error(
                "Could not release reservation %s, it holds its slot until %s: %s",
                reservation.token, reservation.expires_at.isoformat(), exc,
            )

    def sweep(self, before: datetime, as_of: Optional[datetime] = None) -> Dict[str, int]:
        """
        Remove data that no longer affects enforcement or recommendations.

        Deletes counters of windows that ended by `before`, reservations that
        were released or have expired, and feature-disabled denials older
        than `denial_retention_days`.

        Returns:
            Removed row counts keyed by "counters", "reservations", "denials".
        """
        now = utc_now()
        as_of = min(ensure_utc(as_of), now) if as_of else now
        counters = self.ledger.sweep(before)
        reservations = self.storage.delete_expired_reservations(as_of)
        cutoff = as_of - timedelta(days=self.settings.denial_retention_days)
        denials = self.storage.delete_denials_before(cutoff)
        logger.info("Swept %d reservations and %d denials", reservations, denials)
        return {"counters": counters, "reservations": reservations, "denials": denials}

    # =========================================================================
    # Uploads and scheduling
    # =========================================================================

    def validate_upload(
        self,
        subject_id: str,
        file_type: str,
        duration_minutes: Optional[float] = None,
        as_of: Optional[datetime] = None,
    ) -> UploadValidation:
        """Check file type, per-file duration and upload quota together."""
        as_of = ensure_utc(as_of) if as_of else utc_now()
        errors: List[str] = []
        decisions: List[QuotaDecision] = []

        try:
            plan = self._retry(self.resolver.base_plan, subject_id, as_of)
        except StorageUnavailable as exc:
            logger.error("Upload validation for %s failed closed: %s", subject_id, exc)
            denial = self._storage_denial(subject_id, Resource.FILES_DAILY.value, 1)
            return UploadValidation(False, [denial.message], [denial])

        if not plan.accepts_file_type(file_type):
            errors.append(f"File type '{file_type}' not supported on the {plan.name} plan")

        if duration_minutes is not None:
            decision = self.check_quota(subject_id, Resource.AUDIO_DURATION_MINUTES, duration_minutes, as_of)
            decisions.append(decision)
            if not decision.allowed:
                errors.append(decision.message)

        decision = self.check_quota(subject_id, Resource.FILES_DAILY, 1, as_of)
        decisions.append(decision)
        if not decision.allowed:
            errors.append(decision.message)

        return UploadValidation(is_valid=not errors, errors=errors, decisions=decisions)

    def processing_priority(self, subject_id: str, as_of: Optional[datetime] = None) -> int:
        """Queue priority of the subject's effective plan (higher runs first)."""
        return self.resolver.base_plan(subject_id, as_of).priority_level
