"""
test_temporal.py
----------------
Invoice Record Builder: Test Suite for temporal.py
--------------------------------------------------
Tests cover:
    - Valid ISO dates pass through unchanged
    - Day-first dates (dash or slash, 2- or 4-digit year) are reordered
    - Impossible or unparseable dates return None
    - Offset timestamps never end in 'Z' and keep seconds precision

Run:
    pytest tests/test_temporal.py -v --tb=short

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

import os
import re
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from temporal import is_wall_clock, normalize_date, to_offset_timestamp

OFFSET_TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}[+-]\d{2}:\d{2}$")


# ── normalize_date ────────────────────────────────────────────────────────────

def test_iso_date_unchanged():
    """YYYY-MM-DD is returned as-is."""
    assert normalize_date("2024-01-01") == "2024-01-01"


def test_day_first_dash():
    """dd-mm-yyyy reads the first group as the day."""
    assert normalize_date("05-08-1990") == "1990-08-05"


def test_day_first_slash_two_digit_year():
    """Two-digit years are read as 19xx."""
    assert normalize_date("14/02/85") == "1985-02-14"


def test_day_first_never_swapped():
    """13 in the first group is still the day, not the month."""
    assert normalize_date("13-01-2000") == "2000-01-13"


def test_impossible_day_first_date_is_miss():
    """31 February is rejected rather than rolled over."""
    assert normalize_date("31-02-1990") is None


def test_impossible_iso_date_is_miss():
    """ISO-shaped but impossible dates are misses too."""
    assert normalize_date("2024-02-30") is None
    assert normalize_date("2023-13-01") is None
    assert normalize_date("2024-02-29") == "2024-02-29"


def test_not_a_date_is_none():
    """Free text that is not a date normalizes to None."""
    assert normalize_date("not-a-date") is None


def test_blank_and_none():
    """Blank input normalizes to None."""
    assert normalize_date("") is None
    assert normalize_date(None) is None


def test_generic_iso_datetime():
    """A full ISO date-time yields its calendar date."""
    assert normalize_date("1990-08-05T10:30:00Z") == "1990-08-05"


def test_generic_month_name():
    """Month-name formats are accepted as a generic fallback."""
    assert normalize_date("5 Aug 1990") == "1990-08-05"


# ── to_offset_timestamp ───────────────────────────────────────────────────────

def test_now_has_numeric_offset():
    """The default (now) timestamp carries a numeric offset, never 'Z'."""
    stamp = to_offset_timestamp()
    assert OFFSET_TIMESTAMP.match(stamp)
    assert not stamp.endswith("Z")


def test_wall_clock_string_keeps_wall_time():
    """A datetime-local string keeps its wall-clock time and gains seconds."""
    stamp = to_offset_timestamp("2025-08-30T15:04")
    assert stamp.startswith("2025-08-30T15:04:00")
    assert OFFSET_TIMESTAMP.match(stamp)


def test_aware_datetime_keeps_offset():
    """Aware datetimes render with their own offset."""
    ist = timezone(timedelta(hours=5, minutes=30))
    moment = datetime(2025, 8, 30, 15, 4, 5, 123456, tzinfo=ist)
    assert to_offset_timestamp(moment) == "2025-08-30T15:04:05+05:30"


def test_utc_renders_plus_zero():
    """UTC input renders as +00:00 rather than Z."""
    assert to_offset_timestamp("2025-01-01T00:00:00Z") == "2025-01-01T00:00:00+00:00"


def test_deterministic_for_same_input():
    """Identical wall-clock input gives identical output."""
    assert to_offset_timestamp("2025-03-01T09:15") == to_offset_timestamp("2025-03-01T09:15")


def test_bad_wall_clock_raises():
    """Unparseable strings raise ValueError."""
    with pytest.raises(ValueError):
        to_offset_timestamp("yesterday afternoon")


def test_is_wall_clock():
    """is_wall_clock mirrors to_offset_timestamp acceptance."""
    assert is_wall_clock("2025-08-30T15:04") is True
    assert is_wall_clock("yesterday afternoon") is False
