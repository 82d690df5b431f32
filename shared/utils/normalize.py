"""
shared/utils/normalize.py
Canonical forms for the values that identify a booking: branch strings,
phones, calendar dates, time-slot starts and reference codes.
"""

import random
import re
from datetime import date, datetime, timedelta
from typing import Optional, Union

from config.settings import settings

MONTH_ABBR = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]
_MONTH_LOOKUP = {name[:3].lower(): i + 1 for i, name in enumerate(MONTH_NAMES)}

REFERENCE_ALPHABET = "ABCDEFGHIJKLMNPQRSTUVWXYZ123456789"
REFERENCE_PREFIX = "R-"

# Spreadsheet serial day 0
_SERIAL_EPOCH = date(1899, 12, 30)

_INVISIBLE = re.compile("[\u00a0\u202f\u200b]")
_ISO = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")
_SLASHED = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_MONTH_DAY = re.compile(r"^([A-Za-z]+)\.?[\s-]*(\d{1,2})(?:(?:,\s*|\s+|-)(\d{4}))?$")
_CLOCK = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*([AaPp][Mm])?$")

DateLike = Union[str, date, datetime, int, float, None]


def normalize_str(value) -> str:
    """Trim, lower-case and collapse runs of whitespace."""
    return re.sub(r"\s+", " ", str(value or "").strip().lower())


def normalize_phone(value) -> str:
    """
    Digits only, leading zeros and the country code dropped, so
    0917..., +63 917... and 917... all read 917...
    """
    digits = re.sub(r"\D", "", str(value or "")).lstrip("0")
    country = settings.PHONE_COUNTRY_CODE
    if country and digits.startswith(country) and len(digits) - len(country) >= settings.PHONE_NATIONAL_DIGITS:
        digits = digits[len(country):].lstrip("0")
    return digits


def group_code(reference) -> str:
    """
    Canonical reference code for grouping. Empty for degenerate codes:
    blanks, single characters, and numeric ordinals written by the renderer.
    """
    code = str(reference or "").strip().upper()
    if len(code) <= 1 or code.isdigit():
        return ""
    return code


def generate_reference_code() -> str:
    """Human-readable reference like R-X92B1."""
    return REFERENCE_PREFIX + "".join(random.choices(REFERENCE_ALPHABET, k=5))


# ── Dates ─────────────────────────────────────────────────────

def parse_booking_date(value: DateLike, default_year: Optional[int] = None) -> Optional[date]:
    """
    Parse the date formats found in intake and ledger rows. Year-less values
    ("Jun 12", "Jun-12") take `default_year`, else the current year.
    Returns None when the value cannot be read as a calendar date.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        return _SERIAL_EPOCH + timedelta(days=int(value))

    text = _INVISIBLE.sub(" ", str(value)).strip()
    if not text:
        return None

    try:
        match = _ISO.match(text)
        if match:
            year, month, day = (int(g) for g in match.groups())
            return date(year, month, day)

        match = _SLASHED.match(text)
        if match:
            month, day, year = (int(g) for g in match.groups())
            return date(year, month, day)

        match = _MONTH_DAY.match(text)
        if match:
            month = _MONTH_LOOKUP.get(match.group(1)[:3].lower())
            if month is None:
                return None
            if match.group(3):
                year = int(match.group(3))
            else:
                year = default_year or date.today().year
            return date(year, month, int(match.group(2)))
    except ValueError:
        # e.g. Feb 30
        return None
    return None


def to_iso_date(value: DateLike, default_year: Optional[int] = None) -> str:
    """Canonical YYYY-MM-DD, or the trimmed input when it does not parse."""
    parsed = parse_booking_date(value, default_year)
    if parsed is None:
        return str(value or "").strip()
    return parsed.isoformat()


def long_date_label(day: date) -> str:
    """'June 10, 2025', the ledger date header label."""
    return f"{MONTH_NAMES[day.month - 1]} {day.day}, {day.year}"


# ── Time slots ────────────────────────────────────────────────

def slot_start_label(label) -> str:
    """'10:00 AM - 11:30 AM' -> '10:00 AM'"""
    start = re.split(r"\s*-\s*", _INVISIBLE.sub(" ", str(label or "")).strip())[0]
    return re.sub(r"\s+", " ", start).strip()


def slot_start_key(label) -> str:
    """Strict comparison key for a slot start: '10:00 AM - 11:30 AM' -> '10:00am'"""
    start = str(label or "").split("-")[0]
    return re.sub("[\\s\u200b\u202f\u00a0]", "", start).lower()


def slot_minutes(value) -> Optional[int]:
    """Minutes since midnight of a slot start, or None if unreadable."""
    start = slot_start_label(value)
    match = _CLOCK.match(start)
    if not match:
        return None
    hour, minute, meridiem = int(match.group(1)), int(match.group(2) or 0), match.group(3)
    if meridiem is None and match.group(2) is None:
        return None
    if minute > 59:
        return None
    if meridiem:
        if hour < 1 or hour > 12:
            return None
        meridiem = meridiem.upper()
        if meridiem == "PM" and hour < 12:
            hour += 12
        if meridiem == "AM" and hour == 12:
            hour = 0
    elif hour > 23:
        return None
    return hour * 60 + minute
