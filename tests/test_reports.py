"""Tests for usage reports."""

from datetime import datetime, timezone

from quotaflow.enforcement import EnforcementGate
from quotaflow.reports import closed_period_usage, quota_status
from quotaflow.storage import InMemoryStorage

FEB = datetime(2026, 2, 10, tzinfo=timezone.utc)
MAR = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_gate():
    gate = EnforcementGate(InMemoryStorage())
    gate.catalog.seed_defaults()
    return gate


class TestQuotaStatus:
    """Current-window status per resource."""

    def test_reports_consumption_and_remaining(self):
        gate = make_gate()
        gate.record_usage("ws-1", "transcriptions", 10, MAR)
        report = quota_status(gate.ledger, gate.resolver, "ws-1", MAR)

        assert report["plan"] == "free"
        assert report["override_id"] is None
        row = next(r for r in report["resources"] if r["resource"] == "transcriptions")
        assert row["consumed"] == 10
        assert row["limit"] == 25
        assert row["remaining"] == 15
        assert row["percent_used"] == 40.0
        assert row["period_end"] == "2026-04-01T00:00:00+00:00"

    def test_disabled_resource_reports_zero_limit(self):
        gate = make_gate()
        report = quota_status(gate.ledger, gate.resolver, "ws-1", MAR)
        row = next(r for r in report["resources"] if r["resource"] == "voiceSynthesis")
        assert row["limit"] == 0
        assert row["consumed"] == 0


class TestClosedPeriodUsage:
    """Closed counters for billing."""

    def test_overage_against_included_limit(self):
        gate = make_gate()
        gate.record_usage("ws-1", "exports", 7, FEB)
        gate.record_usage("ws-1", "exports", 1, MAR)

        rows = closed_period_usage(gate.ledger, gate.resolver, "ws-1", MAR)
        assert len(rows) == 1
        assert rows[0]["resource"] == "exports"
        assert rows[0]["period_start"] == "2026-02-01T00:00:00+00:00"
        assert rows[0]["included"] == 5
        assert rows[0]["overage_units"] == 2

    def test_open_period_not_reported(self):
        gate = make_gate()
        gate.record_usage("ws-1", "transcriptions", 3, MAR)
        assert closed_period_usage(gate.ledger, gate.resolver, "ws-1", MAR) == []
