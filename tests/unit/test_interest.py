"""
test_interest.py - Unit tests for the interest accrual calculator

Tests:
- Known values (the 500 bps / 100 day scenario)
- Zero elapsed, monotonicity, floor rounding (property-based)
- Input validation
- elapsed_seconds() and as_seconds()
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from datetime import datetime, timedelta
from decimal import Decimal

from nftlend import calculate_interest, elapsed_seconds, BPS_SCALE, SECONDS_PER_DAY
from nftlend.interest import as_seconds

from tests.helpers import WAD


principals = st.integers(min_value=1, max_value=10 ** 30)
rates = st.integers(min_value=1, max_value=100_000)
durations = st.integers(min_value=1, max_value=10 * 365 * SECONDS_PER_DAY)


class TestKnownValues:

    def test_half_term_repayment(self):
        """10 tokens at 500 bps over 100 days, repaid at day 50."""
        interest = calculate_interest(10 * WAD, 500, 100 * SECONDS_PER_DAY, 50 * SECONDS_PER_DAY)
        # per_second = floor(10e18 * 500 / 8_640_000) = 578703703703703
        # interest   = floor(4_320_000 * 578703703703703 / 10_000)
        assert interest == Decimal("249999999999999696")
        assert Decimal("0.25") * WAD - interest < Decimal("1000")

    def test_full_term_without_truncation(self):
        """Exact when principal * rate divides evenly by duration."""
        assert calculate_interest(1_000_000, 1_000, 100, 100) == Decimal("100000")

    def test_per_second_rate_floors_first(self):
        # floor(7 * 3 / 2) = 10, then floor(1 * 10 / 10_000) = 0
        assert calculate_interest(7, 3, 2, 1) == Decimal("0")
        # floor(2 * 10 * 10_000 / 10_000) == 20, not 21
        assert calculate_interest(7, 3, 2, 2 * BPS_SCALE) == Decimal("20")

    def test_elapsed_beyond_duration_keeps_accruing(self):
        short = calculate_interest(10 * WAD, 500, 100, 100)
        double = calculate_interest(10 * WAD, 500, 100, 200)
        assert double == 2 * short

    def test_result_is_whole(self):
        interest = calculate_interest(10 * WAD + 3, 333, 7 * SECONDS_PER_DAY, 12_345)
        assert interest == interest.to_integral_value()


class TestProperties:
    """Property-based checks over the valid input space."""

    @given(principals, rates, durations)
    @settings(max_examples=200)
    def test_zero_elapsed_is_zero(self, principal, rate, duration):
        assert calculate_interest(principal, rate, duration, 0) == Decimal("0")

    @given(principals, rates, durations, st.data())
    @settings(max_examples=200)
    def test_monotonic_in_elapsed(self, principal, rate, duration, data):
        a = data.draw(st.integers(min_value=0, max_value=duration))
        b = data.draw(st.integers(min_value=a, max_value=duration))
        assert calculate_interest(principal, rate, duration, a) <= calculate_interest(principal, rate, duration, b)

    @given(principals, rates, durations)
    @settings(max_examples=200)
    def test_full_term_never_exceeds_quoted_rate(self, principal, rate, duration):
        interest = calculate_interest(principal, rate, duration, duration)
        assert interest * BPS_SCALE <= principal * rate

    @given(principals, rates, durations, st.data())
    @settings(max_examples=100)
    def test_matches_integer_formula(self, principal, rate, duration, data):
        elapsed = data.draw(st.integers(min_value=0, max_value=duration))
        expected = (elapsed * ((principal * rate) // duration)) // BPS_SCALE
        assert calculate_interest(principal, rate, duration, elapsed) == Decimal(expected)


class TestValidation:

    def test_zero_duration_raises(self):
        with pytest.raises(ValueError, match="planned_duration must be positive"):
            calculate_interest(100, 500, 0, 10)

    def test_negative_elapsed_raises(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            calculate_interest(100, 500, 10, -1)

    def test_fractional_principal_raises(self):
        with pytest.raises(ValueError, match="whole number"):
            calculate_interest(Decimal("100.5"), 500, 10, 1)


class TestTimeHelpers:

    def test_elapsed_seconds_truncates(self):
        start = datetime(2025, 1, 1)
        assert elapsed_seconds(start, start + timedelta(seconds=90, microseconds=999_999)) == 90

    def test_elapsed_seconds_rejects_reversed_window(self):
        with pytest.raises(ValueError, match="before start"):
            elapsed_seconds(datetime(2025, 1, 2), datetime(2025, 1, 1))

    def test_as_seconds(self):
        assert as_seconds(timedelta(days=2)) == 2 * SECONDS_PER_DAY
        assert as_seconds(3_600) == 3_600

    def test_as_seconds_rejects_fraction_of_second(self):
        with pytest.raises(ValueError, match="whole number of seconds"):
            as_seconds(timedelta(days=100, milliseconds=500))
