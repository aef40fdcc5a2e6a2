"""
Plan Catalog.

Stores subscription tiers and subject-to-plan assignments. A plan that an
active subscription points at is never edited in place; revising it creates
a new version and retires the old one from new sign-ups.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional
import logging
import uuid

from quotaflow.errors import NotFoundError
from quotaflow.limits import Limit
from quotaflow.models import Plan, PlanCategory, Subscription
from quotaflow.periods import ensure_utc, utc_now
from quotaflow.storage import InMemoryStorage, StorageBackend

logger = logging.getLogger(__name__)

FREE_PLAN_CODE = "free"

_BASIC_TYPES = ["mp3", "wav", "m4a"]
_EXTENDED_TYPES = ["mp3", "wav", "m4a", "flac", "ogg", "aac"]
_ALL_TYPES = ["all_supported_formats"]


def _limits(transcriptions, files_daily, files_monthly, concurrent, voice, exports, minutes):
    return {
        "transcriptions": transcriptions,
        "filesDaily": files_daily,
        "filesMonthly": files_monthly,
        "concurrentJobs": concurrent,
        "voiceSynthesis": voice,
        "exports": exports,
        "audioDurationMinutes": minutes,
    }


def default_plans() -> List[Plan]:
    """The standard tier ladder, cheapest first."""
    return [
        Plan("Free", FREE_PLAN_CODE, PlanCategory.PERSONAL, 0.0,
             _limits(25, 3, 50, 1, 0, 5, 30), priority_level=3,
             allowed_file_types=list(_BASIC_TYPES)),
        Plan("Hobbyist", "hobbyist_monthly", PlanCategory.PERSONAL, 4.99,
             _limits(100, 5, 150, 2, 25, 10, 60), priority_level=4,
             allowed_file_types=list(_BASIC_TYPES)),
        Plan("Starter", "starter_monthly", PlanCategory.PERSONAL, 9.99,
             _limits(200, 10, 300, 2, 50, 20, 120), priority_level=5,
             allowed_file_types=list(_EXTENDED_TYPES)),
        Plan("Creator", "creator_monthly", PlanCategory.BUSINESS, 19.99,
             _limits(500, 25, 750, 4, 150, 50, 240), priority_level=6,
             allowed_file_types=list(_EXTENDED_TYPES)),
        Plan("Professional", "pro_monthly", PlanCategory.BUSINESS, 29.99,
             _limits(1000, 50, 1500, 5, 300, 100, 480), priority_level=7,
             allowed_file_types=list(_ALL_TYPES)),
        Plan("Team", "team_monthly", PlanCategory.BUSINESS, 59.99,
             _limits(5000, 200, 6000, 10, 1000, 500, -1), priority_level=8,
             allowed_file_types=list(_ALL_TYPES)),
        Plan("Studio", "studio_monthly", PlanCategory.BUSINESS, 99.99,
             _limits(10000, 500, 15000, 25, 2000, 1000, -1), priority_level=9,
             allowed_file_types=list(_ALL_TYPES)),
        Plan("Enterprise", "enterprise", PlanCategory.ENTERPRISE, 199.99,
             _limits(-1, -1, -1, -1, -1, -1, -1), priority_level=10,
             allowed_file_types=list(_ALL_TYPES)),
    ]


class PlanCatalog:
    """
    Plans and subscriptions.

    Example:
        ```python
        catalog = PlanCatalog()
        catalog.seed_defaults()
        starter = catalog.by_code("starter_monthly")
        catalog.subscribe("ws-1", starter.plan_id)
        ```
    """

    def __init__(self, storage: Optional[StorageBackend] = None):
        self.storage = storage or InMemoryStorage()

    # =========================================================================
    # Plans
    # =========================================================================

    def seed_defaults(self) -> List[Plan]:
        """Install the default tiers if the catalog is empty."""
        existing = self.storage.list_plans()
        if existing:
            return existing
        plans = [self.add_plan(p) for p in default_plans()]
        logger.info("Seeded plan catalog with %d plans", len(plans))
        return plans

    def add_plan(self, plan: Plan) -> Plan:
        """
        Add a plan.

        Raises:
            ValueError: If any raw limit is invalid or the price is negative.
        """
        for name, raw in plan.limits.items():
            try:
                Limit.from_raw(int(raw))
            except ValueError:
                raise ValueError(f"plan {plan.code}: invalid limit {raw} for {name}") from None
        if plan.price_monthly < 0:
            raise ValueError(f"plan {plan.code}: price must not be negative")
        return self.storage.save_plan(plan)

    def find(self, plan_id: str) -> Optional[Plan]:
        return self.storage.get_plan(plan_id)

    def get(self, plan_id: str) -> Plan:
        plan = self.storage.get_plan(plan_id)
        if plan is None:
            raise NotFoundError(f"Unknown plan: {plan_id}")
        return plan

    def by_code(self, code: str) -> Plan:
        """Newest active version of the plan with this code."""
        matches = [p for p in self.storage.list_plans() if p.code == code and p.is_active]
        if not matches:
            raise NotFoundError(f"Unknown plan code: {code}")
        return max(matches, key=lambda p: p.version)

    def list_plans(self, include_inactive: bool = False, public_only: bool = False) -> List[Plan]:
        """Plans ordered by price."""
        plans = self.storage.list_plans()
        if not include_inactive:
            plans = [p for p in plans if p.is_active]
        if public_only:
            plans = [p for p in plans if p.is_public]
        return sorted(plans, key=lambda p: (p.price_monthly, p.priority_level))

    def free_plan(self) -> Plan:
        """The fallback plan for subjects without a subscription."""
        try:
            return self.by_code(FREE_PLAN_CODE)
        except NotFoundError:
            plans = self.list_plans()
            if not plans:
                raise NotFoundError("Plan catalog is empty") from None
            return plans[0]

    def cheapest(
        self,
        predicate: Callable[[Plan], bool],
        exclude: Optional[str] = None,
        max_price: Optional[float] = None,
    ) -> Optional[Plan]:
        """Cheapest active public plan satisfying `predicate`."""
        for plan in self.list_plans(public_only=True):
            if exclude is not None and plan.plan_id == exclude:
                continue
            if max_price is not None and plan.price_monthly >= max_price:
                continue
            if predicate(plan):
                return plan
        return None

    def revise_plan(self, plan_id: str, **changes) -> Plan:
        """
        Change a plan's terms.

        Plans referenced by an active subscription are versioned: the current
        row is retired and a copy with the changes is added.

        Returns:
            The plan now carrying the new terms.
        """
        current = self.get(plan_id)
        for protected in ("plan_id", "version", "supersedes", "created_at"):
            if protected in changes:
                raise ValueError(f"{protected} cannot be revised")

        if self.storage.count_active_subscriptions(plan_id) == 0:
            return self.add_plan(replace(current, **changes))

        revised = replace(
            current,
            **changes,
            plan_id=uuid.uuid4().hex,
            version=current.version + 1,
            supersedes=current.plan_id,
            created_at=utc_now(),
        )
        self.add_plan(revised)
        self.storage.save_plan(replace(current, is_active=False))
        logger.info("Plan %s revised to version %d", current.code, revised.version)
        return revised

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, subject_id: str, plan_id: str, as_of: Optional[datetime] = None) -> Subscription:
        """Assign a subject to a plan. Retired plans cannot take new sign-ups."""
        plan = self.get(plan_id)
        if not plan.is_active:
            raise ValueError(f"Plan {plan.code} v{plan.version} is retired")
        started = ensure_utc(as_of) if as_of else utc_now()
        return self.storage.set_subscription(Subscription(subject_id, plan_id, started_at=started))

    def cancel(self, subject_id: str) -> None:
        subscription = self.storage.get_subscription(subject_id)
        if subscription is None:
            raise NotFoundError(f"No active subscription for {subject_id}")
        self.storage.set_subscription(replace(subscription, status="canceled"))

    def plan_for(self, subject_id: str) -> Plan:
        """The subject's subscribed plan, or the free plan."""
        subscription = self.storage.get_subscription(subject_id)
        if subscription is not None:
            plan = self.storage.get_plan(subscription.plan_id)
            if plan is not None:
                return plan
            logger.warning("Subscription of %s points at missing plan %s", subject_id, subscription.plan_id)
        return self.free_plan()
