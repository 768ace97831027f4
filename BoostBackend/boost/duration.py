# BoostBackend/boost/duration.py
# Contribution -> boost duration. $5 buys one hour, capped at MAX_BOOST_HOURS.

from __future__ import annotations
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR
from typing import Tuple

from ..config import USD_PER_HOUR, MAX_BOOST_HOURS

MAX_BOOST_MINUTES = MAX_BOOST_HOURS * 60
MAX_BOOST_DURATION = timedelta(hours=MAX_BOOST_HOURS)
_MINUTES_PER_USD = Decimal(60) / USD_PER_HOUR


def _as_decimal(amount) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    # str() keeps floats like 2.5 exact
    return Decimal(str(amount))


def total_minutes_for(contribution) -> int:
    """Whole minutes bought by a contribution (half-up rounding, capped)."""
    amount = _as_decimal(contribution)
    if amount <= 0:
        return 0
    minutes = (amount * _MINUTES_PER_USD).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return min(int(minutes), MAX_BOOST_MINUTES)


def duration_for(contribution) -> Tuple[int, int]:
    """Return (hours, minutes) of boost time for a contribution."""
    return divmod(total_minutes_for(contribution), 60)


def duration_delta(contribution) -> timedelta:
    return timedelta(minutes=total_minutes_for(contribution))


def max_contribution_for(remaining: timedelta) -> Decimal:
    """Largest whole-dollar contribution whose duration still fits into `remaining`."""
    if remaining <= timedelta(0):
        return Decimal(0)
    minutes = Decimal(int(remaining.total_seconds() // 60))
    return (minutes / _MINUTES_PER_USD).quantize(Decimal("1"), rounding=ROUND_FLOOR)


def format_duration(hours: int, minutes: int) -> str:
    return f"{hours}h {minutes}m"
