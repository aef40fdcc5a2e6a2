"""Tests for the custom plan resolver."""

from datetime import datetime, timedelta, timezone
import logging

import pytest

from quotaflow.catalog import PlanCatalog
from quotaflow.errors import InvalidOverrideConfiguration, InvalidTransition, NotFoundError
from quotaflow.limits import Limit, Resource
from quotaflow.models import CustomOverride, OverrideStatus
from quotaflow.resolver import PlanResolver

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def setup_resolver(plan_code="starter_monthly"):
    catalog = PlanCatalog()
    catalog.seed_defaults()
    catalog.subscribe("ws-1", catalog.by_code(plan_code).plan_id)
    return PlanResolver(catalog)


def approved(resolver, limits, start, end=None, **kwargs):
    override = resolver.request_override("ws-1", limits, start, end, **kwargs)
    return resolver.approve_override(override.override_id, "admin", as_of=start)


class TestEffectiveLimits:
    """Test base plan and override merging."""

    def test_base_plan_only(self):
        resolver = setup_resolver()
        limits = resolver.effective_limits("ws-1", NOW)
        assert limits.override_id is None
        assert limits.limit(Resource.TRANSCRIPTIONS) == Limit.bounded(200)

    def test_unsubscribed_uses_free(self):
        resolver = setup_resolver()
        assert resolver.effective_limits("other", NOW).base_plan.code == "free"

    def test_approved_override_wins(self):
        """An approved override of 500 replaces the base 200."""
        resolver = setup_resolver()
        approved(resolver, {"transcriptions": 500}, NOW - timedelta(days=1), NOW + timedelta(days=30))

        limits = resolver.effective_limits("ws-1", NOW)
        assert limits.limit(Resource.TRANSCRIPTIONS) == Limit.bounded(500)
        assert limits.limit(Resource.EXPORTS) == Limit.bounded(20)

    def test_expired_override_ignored(self):
        """Once the contract ends the base limit applies again."""
        resolver = setup_resolver()
        end = NOW + timedelta(days=30)
        approved(resolver, {"transcriptions": 500}, NOW - timedelta(days=1), end)

        assert resolver.effective_limits("ws-1", end).limit(Resource.TRANSCRIPTIONS) == Limit.bounded(200)

    def test_pending_override_ignored(self):
        resolver = setup_resolver()
        resolver.request_override("ws-1", {"transcriptions": 500}, NOW - timedelta(days=1))
        assert resolver.effective_limits("ws-1", NOW).limit(Resource.TRANSCRIPTIONS) == Limit.bounded(200)

    def test_override_base_plan_and_price(self):
        resolver = setup_resolver()
        team = resolver.catalog.by_code("team_monthly")
        approved(resolver, {"exports": -1}, NOW - timedelta(days=1), base_plan_id=team.plan_id, price=49.0)

        limits = resolver.effective_limits("ws-1", NOW)
        assert limits.base_plan.plan_id == team.plan_id
        assert limits.price == 49.0
        assert limits.limit(Resource.EXPORTS).is_unlimited

    def test_overlapping_overrides_pick_latest(self, caplog):
        """Overlap is an anomaly: logged, and the latest approval wins."""
        resolver = setup_resolver()
        first = resolver.request_override("ws-1", {"transcriptions": 300}, NOW - timedelta(days=5))
        resolver.approve_override(first.override_id, "admin", as_of=NOW - timedelta(days=5))
        second = resolver.request_override("ws-1", {"transcriptions": 900}, NOW - timedelta(days=2))
        resolver.approve_override(second.override_id, "admin", as_of=NOW - timedelta(days=2))

        with caplog.at_level(logging.WARNING, logger="quotaflow.resolver"):
            limits = resolver.effective_limits("ws-1", NOW)
        assert limits.limit(Resource.TRANSCRIPTIONS) == Limit.bounded(900)
        assert "overlapping" in caplog.text

    def test_corrupt_override_degrades_to_base(self, caplog):
        """A stored override with an invalid limit is logged and skipped."""
        resolver = setup_resolver()
        resolver.storage.save_override(CustomOverride(
            workspace_id="ws-1",
            limits={"transcriptions": -7},
            contract_start=NOW - timedelta(days=1),
            status=OverrideStatus.APPROVED,
            approved_at=NOW - timedelta(days=1),
        ))
        with caplog.at_level(logging.WARNING, logger="quotaflow.resolver"):
            limits = resolver.effective_limits("ws-1", NOW)
        assert limits.limit(Resource.TRANSCRIPTIONS) == Limit.bounded(200)
        assert "Ignoring override" in caplog.text

    def test_deterministic(self):
        resolver = setup_resolver()
        assert resolver.effective_limits("ws-1", NOW) == resolver.effective_limits("ws-1", NOW)


class TestOverrideWorkflow:
    """Test the request/approve/reject workflow."""

    def test_requests_start_pending(self):
        resolver = setup_resolver()
        override = resolver.request_override("ws-1", {"exports": 50}, NOW)
        assert override.status == OverrideStatus.PENDING
        assert resolver.list_overrides("ws-1") == [override]

    def test_invalid_requests(self):
        resolver = setup_resolver()
        with pytest.raises(InvalidOverrideConfiguration):
            resolver.request_override("ws-1", {"exports": -3}, NOW)
        with pytest.raises(InvalidOverrideConfiguration):
            resolver.request_override("ws-1", {"teleports": 3}, NOW)
        with pytest.raises(InvalidOverrideConfiguration):
            resolver.request_override("ws-1", {"exports": 3}, NOW, NOW - timedelta(days=1))
        with pytest.raises(InvalidOverrideConfiguration):
            resolver.request_override("ws-1", {"exports": 3}, NOW, base_plan_id="missing")

    def test_reject_then_approve_fails(self):
        resolver = setup_resolver()
        override = resolver.request_override("ws-1", {"exports": 50}, NOW)
        rejected = resolver.reject_override(override.override_id, "admin")
        assert rejected.status == OverrideStatus.REJECTED

        with pytest.raises(InvalidTransition):
            resolver.approve_override(override.override_id, "admin")

    def test_unknown_override(self):
        with pytest.raises(NotFoundError):
            setup_resolver().approve_override("missing", "admin")
