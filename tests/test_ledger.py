"""Tests for the usage ledger."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
import tempfile

import pytest

from quotaflow.ledger import UsageLedger, from_units, to_units
from quotaflow.limits import Resource
from quotaflow.periods import period_key
from quotaflow.storage import InMemoryStorage, SQLiteStorage

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class TestUnits:
    """Test hundredths conversion."""

    def test_round_half_up(self):
        assert to_units(1.005) == 101
        assert to_units(2) == 200
        assert to_units(0.125) == 13

    def test_from_units(self):
        assert from_units(1234) == 12.34


class TestLedgerInMemory:
    """Test ledger operations on the in-memory backend."""

    def test_peek_missing_is_zero(self):
        ledger = UsageLedger()
        assert ledger.peek("ws", Resource.EXPORTS, period_key("monthly", NOW)) == 0.0

    def test_increment_and_peek(self):
        """Increments accumulate and peek does not mutate."""
        ledger = UsageLedger()
        key = period_key("monthly", NOW)
        assert ledger.increment("ws", Resource.TRANSCRIPTIONS, key, 2) == 2.0
        assert ledger.increment("ws", Resource.TRANSCRIPTIONS, key, 0.5) == 2.5
        assert ledger.peek("ws", Resource.TRANSCRIPTIONS, key) == 2.5
        assert ledger.peek("ws", Resource.TRANSCRIPTIONS, key) == 2.5

    def test_negative_delta_rejected(self):
        ledger = UsageLedger()
        with pytest.raises(ValueError):
            ledger.increment("ws", Resource.EXPORTS, period_key("monthly", NOW), -1)

    def test_period_isolation(self):
        """Usage in one month does not show up in the next."""
        ledger = UsageLedger()
        march = period_key("monthly", NOW)
        april = period_key("monthly", datetime(2026, 4, 2, tzinfo=timezone.utc))
        ledger.increment("ws", Resource.EXPORTS, march, 7)
        assert ledger.peek("ws", Resource.EXPORTS, april) == 0.0

    def test_subject_isolation(self):
        ledger = UsageLedger()
        key = period_key("monthly", NOW)
        ledger.increment("a", Resource.EXPORTS, key, 3)
        assert ledger.peek("b", Resource.EXPORTS, key) == 0.0

    def test_peak_is_high_water_mark(self):
        """set_peak_concurrent only ever raises the peak."""
        ledger = UsageLedger()
        key = period_key("monthly", NOW)
        assert ledger.set_peak_concurrent("ws", Resource.CONCURRENT_JOBS, key, 3) == 3
        assert ledger.set_peak_concurrent("ws", Resource.CONCURRENT_JOBS, key, 2) == 3
        assert ledger.get_counter("ws", Resource.CONCURRENT_JOBS, key).peak_concurrent == 3

    def test_closed_counters(self):
        """Only windows that ended are returned for billing."""
        ledger = UsageLedger()
        feb = period_key("monthly", datetime(2026, 2, 10, tzinfo=timezone.utc))
        march = period_key("monthly", NOW)
        ledger.increment("ws", Resource.EXPORTS, feb, 4)
        ledger.increment("ws", Resource.EXPORTS, march, 1)

        closed = ledger.closed_counters("ws", NOW)
        assert len(closed) == 1
        assert closed[0].consumed == 4

    def test_sweep_removes_only_closed(self):
        ledger = UsageLedger()
        feb = period_key("monthly", datetime(2026, 2, 10, tzinfo=timezone.utc))
        march = period_key("monthly", NOW)
        ledger.increment("ws", Resource.EXPORTS, feb, 4)
        ledger.increment("ws", Resource.EXPORTS, march, 1)

        removed = ledger.sweep(datetime(2026, 3, 1, tzinfo=timezone.utc))
        assert removed == 1
        assert ledger.peek("ws", Resource.EXPORTS, march) == 1.0
        assert ledger.peek("ws", Resource.EXPORTS, feb) == 0.0


def _hammer(ledger, threads=8, per_thread=25):
    key = period_key("monthly", NOW)
    ledger.increment("ws", Resource.TRANSCRIPTIONS, key, 5)

    def work(_):
        for _ in range(per_thread):
            ledger.increment("ws", Resource.TRANSCRIPTIONS, key, 1)

    with ThreadPoolExecutor(max_workers=threads) as pool:
        list(pool.map(work, range(threads)))
    return ledger.peek("ws", Resource.TRANSCRIPTIONS, key)


class TestConcurrentIncrements:
    """N concurrent increments of 1 add exactly N."""

    def test_in_memory(self):
        assert _hammer(UsageLedger(InMemoryStorage())) == 5 + 8 * 25

    def test_sqlite(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            storage = SQLiteStorage(db_path=f"{tmpdir}/quotaflow.db")
            assert _hammer(UsageLedger(storage)) == 5 + 8 * 25
            storage.close()
