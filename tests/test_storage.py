"""Tests for storage backends."""

from datetime import datetime, timedelta, timezone
import sqlite3
import tempfile

import pytest

from quotaflow.catalog import PlanCatalog
from quotaflow.enforcement import EnforcementGate
from quotaflow.errors import StorageUnavailable
from quotaflow.limits import PeriodType, Resource
from quotaflow.models import (
    CustomOverride,
    Denial,
    OverrideStatus,
    Recommendation,
    RecommendationReason,
    Reservation,
)
from quotaflow.periods import period_key
from quotaflow.storage import InMemoryStorage, SQLiteStorage

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def test_sqlite_storage_persists_counters():
    """SQLite storage should persist usage across instances."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = f"{tmpdir}/quotaflow.db"

        storage = SQLiteStorage(db_path=db_path)
        gate = EnforcementGate(storage)
        gate.catalog.seed_defaults()
        gate.record_usage("ws-1", "exports", 3, NOW)
        storage.close()

        storage2 = SQLiteStorage(db_path=db_path)
        counter = storage2.get_counter("ws-1", "exports", period_key("monthly", NOW))
        assert counter.consumed == 3
        assert counter.period_type == PeriodType.MONTHLY
        assert counter.period_end == datetime(2026, 4, 1, tzinfo=timezone.utc)
        storage2.close()


def test_sqlite_storage_plans_roundtrip():
    """Plans and subscriptions survive a round trip."""
    with tempfile.TemporaryDirectory() as tmpdir:
        storage = SQLiteStorage(db_path=f"{tmpdir}/quotaflow.db")
        catalog = PlanCatalog(storage)
        catalog.seed_defaults()
        free = catalog.by_code("free")
        catalog.subscribe("ws-1", free.plan_id, NOW)

        loaded = storage.get_plan(free.plan_id)
        assert loaded.limits == free.limits
        assert loaded.allowed_file_types == ["mp3", "wav", "m4a"]
        assert storage.get_subscription("ws-1").plan_id == free.plan_id
        assert storage.count_active_subscriptions(free.plan_id) == 1
        storage.close()


def test_sqlite_storage_overrides_and_recommendations():
    with tempfile.TemporaryDirectory() as tmpdir:
        storage = SQLiteStorage(db_path=f"{tmpdir}/quotaflow.db")
        override = CustomOverride(
            workspace_id="ws-1",
            limits={"transcriptions": 500},
            contract_start=NOW,
            contract_end=NOW + timedelta(days=30),
            status=OverrideStatus.APPROVED,
            approved_at=NOW,
        )
        storage.save_override(override)
        loaded = storage.list_overrides("ws-1")[0]
        assert loaded.limits == {"transcriptions": 500}
        assert loaded.is_honored(NOW + timedelta(days=1))

        rec = Recommendation(
            subject_id="ws-1",
            current_plan_id="a",
            recommended_plan_id="b",
            reason=RecommendationReason.COST_OPTIMIZATION,
            confidence=0.7,
            monthly_cost_delta=-10.0,
            expires_at=NOW + timedelta(days=30),
            benefits=["exports: 20 -> 100"],
            created_at=NOW,
        )
        storage.save_recommendation(rec)
        assert storage.get_recommendation(rec.recommendation_id) == rec
        storage.close()


@pytest.mark.parametrize("backend", ["memory", "sqlite"])
def test_try_reserve_respects_limit(backend):
    """Reservations beyond the limit are refused atomically."""
    with tempfile.TemporaryDirectory() as tmpdir:
        storage = InMemoryStorage() if backend == "memory" else SQLiteStorage(f"{tmpdir}/q.db")
        expires = NOW + timedelta(minutes=5)

        assert storage.try_reserve(Reservation("ws-1", "concurrentJobs", 1, expires), 2, NOW)
        assert storage.try_reserve(Reservation("ws-1", "concurrentJobs", 1, expires), 2, NOW)
        assert not storage.try_reserve(Reservation("ws-1", "concurrentJobs", 1, expires), 2, NOW)
        assert storage.reserved_quantity("ws-1", "concurrentJobs", NOW) == 2
        assert storage.reserved_quantity("ws-1", "concurrentJobs", expires) == 0


@pytest.mark.parametrize("backend", ["memory", "sqlite"])
def test_denial_counts(backend):
    with tempfile.TemporaryDirectory() as tmpdir:
        storage = InMemoryStorage() if backend == "memory" else SQLiteStorage(f"{tmpdir}/q.db")
        storage.add_denial(Denial("ws-1", "voiceSynthesis", NOW - timedelta(days=60)))
        storage.add_denial(Denial("ws-1", "voiceSynthesis", NOW))
        storage.add_denial(Denial("ws-1", "exports", NOW))
        assert storage.count_denials("ws-1", NOW - timedelta(days=1)) == {
            "voiceSynthesis": 1,
            "exports": 1,
        }


def test_unopenable_database():
    """A path that cannot be opened surfaces as StorageUnavailable."""
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(StorageUnavailable):
            SQLiteStorage(db_path=f"{tmpdir}/missing/dir/quotaflow.db")


class FailingConnection:
    """Wraps a sqlite3 connection and fails the statements `fail_when` selects."""

    def __init__(self, conn, fail_when):
        self._conn = conn
        self.fail_when = fail_when

    def execute(self, sql, params=()):
        if self.fail_when(sql, params):
            raise sqlite3.OperationalError("disk I/O error")
        return self._conn.execute(sql, params)

    @property
    def in_transaction(self):
        return self._conn.in_transaction


def test_sqlite_record_usage_is_all_or_nothing():
    """A failed monthly write leaves the daily window untouched too."""
    with tempfile.TemporaryDirectory() as tmpdir:
        storage = SQLiteStorage(db_path=f"{tmpdir}/quotaflow.db")
        gate = EnforcementGate(storage)
        gate.catalog.seed_defaults()
        daily = period_key("daily", NOW)
        monthly = period_key("monthly", NOW)

        real = storage._conn
        storage._conn = FailingConnection(
            real, lambda sql, params: "usage_counters" in sql and "monthly" in params
        )
        for _ in range(2):
            with pytest.raises(StorageUnavailable):
                gate.record_usage("ws-1", "filesDaily", 1, NOW)
        storage._conn = real

        assert gate.ledger.peek("ws-1", Resource.FILES_DAILY, daily) == 0
        assert gate.ledger.peek("ws-1", Resource.FILES_MONTHLY, monthly) == 0

        gate.record_usage("ws-1", "filesDaily", 1, NOW)
        assert gate.ledger.peek("ws-1", Resource.FILES_DAILY, daily) == 1
        assert gate.ledger.peek("ws-1", Resource.FILES_MONTHLY, monthly) == 1
        storage.close()


def test_sqlite_failed_commit_rolls_back():
    """A COMMIT failure surfaces as StorageUnavailable and leaves no open transaction."""
    with tempfile.TemporaryDirectory() as tmpdir:
        storage = SQLiteStorage(db_path=f"{tmpdir}/quotaflow.db")
        real = storage._conn
        storage._conn = FailingConnection(real, lambda sql, params: sql == "COMMIT")
        with pytest.raises(StorageUnavailable):
            storage.add_denial(Denial("ws-1", "exports", NOW))
        storage._conn = real

        assert not real.in_transaction
        storage.add_denial(Denial("ws-1", "exports", NOW))
        assert storage.count_denials("ws-1", NOW - timedelta(days=1)) == {"exports": 1}
        storage.close()


@pytest.mark.parametrize("backend", ["memory", "sqlite"])
def test_finished_reservations_are_pruned(backend):
    with tempfile.TemporaryDirectory() as tmpdir:
        storage = InMemoryStorage() if backend == "memory" else SQLiteStorage(f"{tmpdir}/q.db")
        for _ in range(20):
            reservation = Reservation("ws-1", "concurrentJobs", 1, NOW + timedelta(minutes=5))
            assert storage.try_reserve(reservation, 1, NOW)
            assert storage.release_reservation(reservation.token).released
        assert storage.release_reservation(reservation.token) is None

        storage.try_reserve(Reservation("ws-1", "concurrentJobs", 1, NOW + timedelta(minutes=1)), 1, NOW)
        later = NOW + timedelta(minutes=2)
        assert storage.delete_expired_reservations(later) == 1
        assert storage.delete_expired_reservations(later) == 0


@pytest.mark.parametrize("backend", ["memory", "sqlite"])
def test_delete_denials_before(backend):
    with tempfile.TemporaryDirectory() as tmpdir:
        storage = InMemoryStorage() if backend == "memory" else SQLiteStorage(f"{tmpdir}/q.db")
        storage.add_denial(Denial("ws-1", "voiceSynthesis", NOW - timedelta(days=100)))
        storage.add_denial(Denial("ws-1", "voiceSynthesis", NOW))
        assert storage.delete_denials_before(NOW - timedelta(days=90)) == 1
        assert storage.count_denials("ws-1", NOW - timedelta(days=365)) == {"voiceSynthesis": 1}
