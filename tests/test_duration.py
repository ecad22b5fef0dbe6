"""Tests for duration parsing."""

from datetime import timedelta

import pytest

from fetchguard import parse_duration


class TestParseDuration:
    """Tests for parse_duration function."""

    def test_milliseconds(self) -> None:
        assert parse_duration("100ms") == 100
        assert parse_duration("0ms") == 0

    def test_seconds(self) -> None:
        assert parse_duration("1s") == 1000
        assert parse_duration("30s") == 30000

    def test_fractional(self) -> None:
        """Test fractional values."""
        assert parse_duration("1.5s") == 1500
        assert parse_duration("0.25m") == 15_000

    def test_larger_units(self) -> None:
        assert parse_duration("5m") == 300_000
        assert parse_duration("2h") == 7_200_000
        assert parse_duration("7d") == 604_800_000

    def test_compound(self) -> None:
        """Test compound durations like 1m30s."""
        assert parse_duration("1m30s") == 90_000
        assert parse_duration("1h1m1s1ms") == 3_661_001

    def test_number_passthrough(self) -> None:
        """Numbers are already milliseconds."""
        assert parse_duration(1000) == 1000
        assert parse_duration(0) == 0
        assert parse_duration(2.5) == 2.5

    def test_timedelta(self) -> None:
        assert parse_duration(timedelta(seconds=2)) == 2000

    def test_invalid_format(self) -> None:
        """Test that invalid formats raise ValueError."""
        for bad in ["invalid", "10x", "s10", "", "10", "1m 30s", "-5s"]:
            with pytest.raises(ValueError, match="Invalid duration"):
                parse_duration(bad)

    def test_negative_number_rejected(self) -> None:
        with pytest.raises(ValueError, match="Invalid duration"):
            parse_duration(-1)
