"""Tests for limit values and the resource registry."""

import pytest

from quotaflow.limits import (
    Limit,
    PeriodType,
    Resource,
    ResourceKind,
    decode_limits,
    parse_resource,
    resources_for_meter,
)


class TestLimitDecoding:
    """Test raw limit decoding."""

    def test_sentinels(self):
        """-1 is unlimited, 0 is disabled."""
        assert Limit.from_raw(-1).is_unlimited
        assert Limit.from_raw(0).is_disabled
        assert Limit.from_raw(25) == Limit.bounded(25)

    def test_invalid_raw_rejected(self):
        """Anything below -1 is invalid configuration."""
        with pytest.raises(ValueError):
            Limit.from_raw(-2)

    def test_round_trip(self):
        """to_raw restores the persisted encoding."""
        for raw in (-1, 0, 1, 500):
            assert Limit.from_raw(raw).to_raw() == raw

    def test_decode_drops_unknown_names(self):
        """Unknown resource names are ignored when decoding."""
        limits = decode_limits({"transcriptions": 10, "teleportation": 5})
        assert limits == {Resource.TRANSCRIPTIONS: Limit.bounded(10)}


class TestLimitArithmetic:
    """Test that callers never see sentinel arithmetic."""

    def test_unlimited_always_allows(self):
        """Unlimited allows any quantity and has no remaining."""
        limit = Limit.unlimited()
        assert limit.allows(10**9, 10**9)
        assert limit.remaining(123) is None
        assert limit.utilization(10**6) == 0.0

    def test_disabled_never_allows(self):
        """Disabled denies even a zero request."""
        limit = Limit.disabled()
        assert not limit.allows(0, 0)
        assert limit.remaining(0) == 0.0

    def test_bounded_edge(self):
        """Bounded limits admit up to and including the cap."""
        limit = Limit.bounded(10)
        assert limit.allows(9, 1)
        assert not limit.allows(9, 2)
        assert limit.remaining(12) == 0.0
        assert limit.utilization(5) == 0.5

    def test_fractional_sums(self):
        """Fractional quantities that add up to the cap are admitted."""
        assert Limit.bounded(10).allows(9.1, 0.9)

    def test_covers(self):
        """covers compares generosity across kinds."""
        assert Limit.unlimited().covers(Limit.bounded(5))
        assert not Limit.bounded(5).covers(Limit.unlimited())
        assert Limit.bounded(5).covers(Limit.disabled())
        assert Limit.bounded(10).covers(Limit.bounded(5))

    def test_str(self):
        assert str(Limit.unlimited()) == "Unlimited"
        assert str(Limit.bounded(7)) == "7"


class TestResources:
    """Test the resource registry."""

    def test_files_share_a_meter(self):
        """filesDaily and filesMonthly count the same uploads."""
        assert Resource.FILES_DAILY.meter == Resource.FILES_MONTHLY.meter
        assert resources_for_meter("files") == [Resource.FILES_DAILY, Resource.FILES_MONTHLY]

    def test_kinds(self):
        assert Resource.CONCURRENT_JOBS.kind == ResourceKind.CONCURRENT
        assert Resource.AUDIO_DURATION_MINUTES.kind == ResourceKind.PER_UNIT
        assert Resource.TRANSCRIPTIONS.kind == ResourceKind.CUMULATIVE
        assert Resource.FILES_DAILY.period_type == PeriodType.DAILY

    def test_parse_resource(self):
        """Unknown names parse to None."""
        assert parse_resource("exports") == Resource.EXPORTS
        assert parse_resource("nope") is None
