"""Read-only usage reports: current quota status and closed-period usage."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from quotaflow.ledger import UsageLedger
from quotaflow.limits import Resource, ResourceKind
from quotaflow.periods import ensure_utc, period_key, utc_now
from quotaflow.resolver import PlanResolver


def quota_status(
    ledger: UsageLedger,
    resolver: PlanResolver,
    subject_id: str,
    as_of: Optional[datetime] = None,
) -> dict:
    """
    Per-resource consumption in the current windows.

    Returns:
        {"subject_id", "plan", "override_id", "as_of", "resources": [...]}
        where each resource entry has consumed, limit (raw), remaining,
        percent_used and period_end.
    """
    as_of = ensure_utc(as_of) if as_of else utc_now()
    limits = resolver.effective_limits(subject_id, as_of)

    resources = []
    for resource in Resource:
        limit = limits.limit(resource)
        key = period_key(resource.period_type, as_of)
        counter = ledger.get_counter(subject_id, resource, key)
        if counter is None:
            consumed = 0.0
        elif resource.kind == ResourceKind.CUMULATIVE:
            consumed = counter.consumed
        else:
            consumed = counter.peak_concurrent
        resources.append({
            "resource": resource.value,
            "label": resource.info.label,
            "period_type": resource.period_type.value,
            "consumed": consumed,
            "limit": limit.to_raw(),
            "remaining": limit.remaining(consumed) if resource.kind == ResourceKind.CUMULATIVE else None,
            "percent_used": round(limit.utilization(consumed) * 100, 1),
            "period_end": key.end.isoformat(),
        })

    return {
        "subject_id": subject_id,
        "plan": limits.base_plan.code,
        "override_id": limits.override_id,
        "as_of": as_of.isoformat(),
        "resources": resources,
    }


def closed_period_usage(
    ledger: UsageLedger,
    resolver: PlanResolver,
    subject_id: str,
    as_of: Optional[datetime] = None,
) -> List[dict]:
    """Closed counters with the included limit, for external billing.

    The included limit is the one in force at the last instant of each
    period. No amounts are priced here.
    """
    as_of = ensure_utc(as_of) if as_of else utc_now()
    rows = []
    for counter in ledger.closed_counters(subject_id, as_of):
        resources = [
            r for r in Resource
            if r.meter == counter.meter and r.period_type == counter.period_type
        ]
        if not resources:
            continue
        resource = resources[0]
        last_instant = counter.period_end - timedelta(microseconds=1)
        limit = resolver.effective_limits(subject_id, last_instant).limit(resource)
        used = counter.consumed if resource.kind == ResourceKind.CUMULATIVE else counter.peak_concurrent
        overage = 0.0
        if limit.is_bounded and resource.kind == ResourceKind.CUMULATIVE:
            overage = max(0.0, used - limit.value)
        rows.append({
            "resource": resource.value,
            "period_type": counter.period_type.value,
            "period_start": counter.period_start.isoformat(),
            "period_end": counter.period_end.isoformat(),
            "consumed": counter.consumed,
            "peak": counter.peak_concurrent,
            "included": limit.to_raw(),
            "overage_units": overage,
        })
    return rows
