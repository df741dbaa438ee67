"""
interest.py - Interest Accrual Calculator

Interest is quoted in basis points of principal, amortized linearly over the
offer's planned duration:

    per_second = floor(principal * rate_bps / planned_duration)
    interest   = floor(elapsed * per_second / BPS_SCALE)

The per-second figure is fixed when the offer is created, so repaying early
costs proportionally less. Both get_interest() (quoting) and repay_lend()
(charging) call calculate_interest(), so a quote for a given elapsed time is
always exactly what repayment charges for the same elapsed time.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Union

# Full scale for basis points: 10,000 bps == 100%.
BPS_SCALE = 10_000

SECONDS_PER_DAY = 86_400


def _whole(value, name: str) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(value)
    if value != value.to_integral_value():
        raise ValueError(f"{name} must be a whole number, got {value}")
    return value


def calculate_interest(
    principal: Decimal,
    rate_bps: int,
    planned_duration: int,
    elapsed: int,
) -> Decimal:
    """
    Interest owed after `elapsed` seconds on a loan.

    PURE FUNCTION - multiplication always happens before the division it
    feeds, and both divisions floor.

    Args:
        principal: Amount lent, in base units
        rate_bps: Rate over the whole planned duration, in basis points
        planned_duration: Planned loan length in seconds
        elapsed: Seconds since acceptance

    Returns:
        Interest in whole base units.

    Raises:
        ValueError: If planned_duration is not positive, or any input is
                    negative or fractional.

    Example:
        # 10 tokens (18 decimals) at 500 bps over 100 days, repaid at day 50
        calculate_interest(10 * 10**18, 500, 100 * SECONDS_PER_DAY, 50 * SECONDS_PER_DAY)
        # -> Decimal('249999999999999696'), just under 0.25 tokens
    """
    principal = _whole(principal, "principal")
    rate = _whole(rate_bps, "rate_bps")
    duration = _whole(planned_duration, "planned_duration")
    elapsed = _whole(elapsed, "elapsed")

    if duration <= 0:
        raise ValueError(f"planned_duration must be positive, got {duration}")
    if principal < 0 or rate < 0 or elapsed < 0:
        raise ValueError("principal, rate_bps and elapsed cannot be negative")

    per_second = (principal * rate) // duration
    return (elapsed * per_second) // BPS_SCALE


def elapsed_seconds(start: datetime, end: datetime) -> int:
    """
    Whole seconds from start to end, truncated.

    Raises:
        ValueError: If end is before start
    """
    if end < start:
        raise ValueError(f"end {end} is before start {start}")
    return int((end - start).total_seconds())


def as_seconds(duration: Union[int, timedelta]) -> int:
    """
    Accept a timedelta or a whole number of seconds.

    Raises:
        ValueError: If a timedelta carries a fraction of a second
    """
    if isinstance(duration, timedelta):
        if duration.microseconds:
            raise ValueError(f"Duration must be a whole number of seconds, got {duration}")
        return duration.days * SECONDS_PER_DAY + duration.seconds
    return duration
