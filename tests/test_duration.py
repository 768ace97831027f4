"""
Tests for the contribution -> duration calculator.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from BoostBackend.boost.duration import (
    MAX_BOOST_MINUTES,
    duration_delta,
    duration_for,
    format_duration,
    max_contribution_for,
    total_minutes_for,
)


class TestDurationFor:
    @pytest.mark.parametrize("amount,expected", [
        ("5", (1, 0)),
        ("10", (2, 0)),
        ("7.5", (1, 30)),
        ("0.01", (0, 0)),
        ("0.05", (0, 1)),      # 0.6 min rounds half-up to 1
        ("239.99", (48, 0)),
        ("240", (48, 0)),
    ])
    def test_rate_is_five_dollars_per_hour(self, amount, expected):
        assert duration_for(Decimal(amount)) == expected

    def test_capped_at_48_hours(self):
        assert duration_for(Decimal("1000")) == (48, 0)
        assert total_minutes_for(10_000) == MAX_BOOST_MINUTES

    def test_non_positive_is_zero(self):
        assert duration_for(0) == (0, 0)
        assert duration_for(Decimal("-5")) == (0, 0)

    def test_accepts_int_and_float(self):
        assert duration_for(20) == (4, 0)
        assert duration_for(2.5) == (0, 30)

    def test_idempotent(self):
        assert duration_for(Decimal("13.37")) == duration_for(Decimal("13.37"))

    def test_monotonic(self):
        previous = (0, 0)
        for cents in range(0, 30000, 37):
            current = duration_for(Decimal(cents) / 100)
            assert current >= previous
            previous = current


class TestHelpers:
    def test_duration_delta(self):
        assert duration_delta(Decimal("12.5")) == timedelta(hours=2, minutes=30)

    def test_max_contribution_for_remaining_time(self):
        assert max_contribution_for(timedelta(hours=8)) == Decimal(40)
        # 59 minutes only fits $4 (48 min)
        assert max_contribution_for(timedelta(minutes=59)) == Decimal(4)
        assert max_contribution_for(timedelta(0)) == Decimal(0)
        assert max_contribution_for(timedelta(minutes=-5)) == Decimal(0)

    def test_format_duration(self):
        assert format_duration(*duration_for(Decimal("7.5"))) == "1h 30m"
