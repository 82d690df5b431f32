"""
services/ledger/sharding.py
Period sharding: every booking date belongs to one fortnight shard,
"Jun 1 - 15, 2025" or "Jun 16 - 30, 2025". Dates that do not parse go to
the fixed "Unsorted" shard.
"""

import calendar
from datetime import date
from typing import Optional

from shared.utils.normalize import MONTH_ABBR, DateLike, parse_booking_date

UNSORTED_SHARD = "Unsorted"


def shard_for_day(day: date) -> str:
    if day.day <= 15:
        span = "1 - 15"
    else:
        span = f"16 - {calendar.monthrange(day.year, day.month)[1]}"
    return f"{MONTH_ABBR[day.month - 1]} {span}, {day.year}"


def shard_name(value: DateLike, today: Optional[date] = None) -> str:
    """Shard for a stored date value. Year-less dates use today's year."""
    default_year = (today or date.today()).year
    day = parse_booking_date(value, default_year)
    if day is None:
        return UNSORTED_SHARD
    return shard_for_day(day)
