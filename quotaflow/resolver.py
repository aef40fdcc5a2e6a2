"""
Custom Plan Resolver.

Merges a workspace's base plan with an approved custom override to produce
the limits enforcement should apply at a given instant.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional
import logging

from quotaflow.catalog import PlanCatalog
from quotaflow.errors import InvalidOverrideConfiguration, InvalidTransition, NotFoundError
from quotaflow.limits import Limit, Resource, decode_limits, parse_resource
from quotaflow.models import CustomOverride, EffectiveLimitSet, OverrideStatus, Plan
from quotaflow.periods import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class PlanResolver:
    """Computes EffectiveLimitSets. Reads only; never writes during lookup."""

    def __init__(self, catalog: PlanCatalog):
        self.catalog = catalog
        self.storage = catalog.storage

    def _honored_override(self, workspace_id: str, as_of: datetime) -> Optional[CustomOverride]:
        honored = [o for o in self.storage.list_overrides(workspace_id) if o.is_honored(as_of)]
        if not honored:
            return None
        if len(honored) > 1:
            logger.warning(
                "%d overlapping approved overrides for %s; using the most recently approved",
                len(honored), workspace_id,
            )
        return max(honored, key=lambda o: (o.approved_at or o.created_at, o.created_at))

    def effective_limits(self, workspace_id: str, as_of: Optional[datetime] = None) -> EffectiveLimitSet:
        """
        Resolve the limits in force for a workspace.

        Override entries win per resource; everything else is inherited from
        the base plan. An override that cannot be applied is logged and
        ignored rather than failing the lookup.

        Args:
            workspace_id: Workspace or user id.
            as_of: Instant to resolve at (default: now).

        Returns:
            EffectiveLimitSet
        """
        as_of = ensure_utc(as_of) if as_of else utc_now()
        override = self._honored_override(workspace_id, as_of)
        base_plan = self.catalog.plan_for(workspace_id)

        if override is None:
            return EffectiveLimitSet(
                subject_id=workspace_id,
                base_plan=base_plan,
                limits=base_plan.decoded_limits(),
                price=base_plan.price_monthly,
                as_of=as_of,
            )

        try:
            if override.base_plan_id:
                named = self.catalog.find(override.base_plan_id)
                if named is None:
                    raise InvalidOverrideConfiguration(
                        f"override {override.override_id} names unknown plan {override.base_plan_id}"
                    )
                base_plan = named
            overrides = decode_limits(override.limits)
        except (InvalidOverrideConfiguration, ValueError) as exc:
            logger.warning("Ignoring override for %s: %s", workspace_id, exc)
            return EffectiveLimitSet(
                subject_id=workspace_id,
                base_plan=base_plan,
                limits=base_plan.decoded_limits(),
                price=base_plan.price_monthly,
                as_of=as_of,
            )

        limits: Dict[Resource, Limit] = base_plan.decoded_limits()
        limits.update(overrides)
        return EffectiveLimitSet(
            subject_id=workspace_id,
            base_plan=base_plan,
            limits=limits,
            price=override.price if override.price is not None else base_plan.price_monthly,
            as_of=as_of,
            override_id=override.override_id,
        )

    def base_plan(self, workspace_id: str, as_of: Optional[datetime] = None) -> Plan:
        return self.effective_limits(workspace_id, as_of).base_plan

    # =========================================================================
    # Override workflow
    # =========================================================================

    def request_override(
        self,
        workspace_id: str,
        limits: Dict[str, int],
        contract_start: datetime,
        contract_end: Optional[datetime] = None,
        base_plan_id: Optional[str] = None,
        price: Optional[float] = None,
        requested_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> CustomOverride:
        """
        Create a pending override. It has no effect until approved.

        Raises:
            InvalidOverrideConfiguration: On unknown resources, raw limits
                below -1, an unknown base plan or an empty contract window.
        """
        if not limits:
            raise InvalidOverrideConfiguration("override must set at least one limit")
        for name, raw in limits.items():
            if parse_resource(name) is None:
                raise InvalidOverrideConfiguration(f"unknown resource {name!r}")
            try:
                Limit.from_raw(int(raw))
            except ValueError:
                raise InvalidOverrideConfiguration(f"invalid limit {raw} for {name}") from None
        if base_plan_id is not None and self.catalog.find(base_plan_id) is None:
            raise InvalidOverrideConfiguration(f"unknown base plan {base_plan_id}")
        contract_start = ensure_utc(contract_start)
        if contract_end is not None:
            contract_end = ensure_utc(contract_end)
            if contract_end <= contract_start:
                raise InvalidOverrideConfiguration("contract_end must be after contract_start")
        if price is not None and price < 0:
            raise InvalidOverrideConfiguration("price must not be negative")

        override = CustomOverride(
            workspace_id=workspace_id,
            limits={k: int(v) for k, v in limits.items()},
            contract_start=contract_start,
            contract_end=contract_end,
            base_plan_id=base_plan_id,
            price=price,
            requested_by=requested_by,
            notes=notes,
        )
        return self.storage.save_override(override)

    def _get_override(self, override_id: str) -> CustomOverride:
        override = self.storage.get_override(override_id)
        if override is None:
            raise NotFoundError(f"Unknown override: {override_id}")
        return override

    def approve_override(
        self, override_id: str, approved_by: str, as_of: Optional[datetime] = None
    ) -> CustomOverride:
        override = self._get_override(override_id)
        if override.status != OverrideStatus.PENDING:
            raise InvalidTransition("override", override.status.value, OverrideStatus.APPROVED.value)
        approved = replace(
            override,
            status=OverrideStatus.APPROVED,
            approved_by=approved_by,
            approved_at=ensure_utc(as_of) if as_of else utc_now(),
        )
        self.storage.save_override(approved)
        logger.info("Override %s for %s approved by %s", override_id, override.workspace_id, approved_by)
        return approved

    def reject_override(self, override_id: str, rejected_by: Optional[str] = None) -> CustomOverride:
        override = self._get_override(override_id)
        if override.status != OverrideStatus.PENDING:
            raise InvalidTransition("override", override.status.value, OverrideStatus.REJECTED.value)
        rejected = replace(override, status=OverrideStatus.REJECTED, approved_by=rejected_by)
        self.storage.save_override(rejected)
        logger.info("Override %s for %s rejected", override_id, override.workspace_id)
        return rejected

    def list_overrides(self, workspace_id: str) -> List[CustomOverride]:
        return self.storage.list_overrides(workspace_id)
