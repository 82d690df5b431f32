"""
tests/test_sharding.py
Fortnight shard assignment.
"""

from datetime import date

import pytest

from services.ledger.sharding import UNSORTED_SHARD, shard_for_day, shard_name


def test_yearless_dates_fall_in_the_current_year_fortnights():
    year = date.today().year
    assert shard_name("Jun 12") == f"Jun 1 - 15, {year}"
    assert shard_name("Jun 20") == f"Jun 16 - 30, {year}"


def test_yearless_dates_follow_the_supplied_today():
    today = date(2024, 12, 28)
    assert shard_name("Jun 12", today) == "Jun 1 - 15, 2024"


@pytest.mark.parametrize("day,expected", [
    (date(2025, 6, 1), "Jun 1 - 15, 2025"),
    (date(2025, 6, 15), "Jun 1 - 15, 2025"),
    (date(2025, 6, 16), "Jun 16 - 30, 2025"),
    (date(2025, 1, 31), "Jan 16 - 31, 2025"),
    (date(2024, 2, 29), "Feb 16 - 29, 2024"),
    (date(2025, 2, 20), "Feb 16 - 28, 2025"),
])
def test_shard_for_day_bounds(day, expected):
    assert shard_for_day(day) == expected


def test_unparseable_dates_go_to_unsorted():
    assert shard_name("someday") == UNSORTED_SHARD
    assert shard_name("") == UNSORTED_SHARD
