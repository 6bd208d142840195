"""Bikram Sambat / Gregorian calendar conversion.

Table-driven BS <-> AD conversion with:
- Date-string parsing and zero-padded formatting for both calendars
- Calendar detection for bare "YYYY/MM/DD" strings
- Nepali fiscal-year assignment (FY starts on Shrawan 1, BS month 4)

Conversion never raises: dates outside the month-length table or with an
impossible day for the month yield None.
"""

import re
from bisect import bisect_right
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Literal

from services.calendar.data import (
    AD_EPOCH,
    BS_MAX_YEAR,
    BS_MIN_YEAR,
    BS_MONTH_DAYS,
    BS_YEAR_OFFSETS,
)
from services.normalization.service import convert_nepali_digits

CalendarType = Literal["BS", "AD"]

SUPPORTED_BS_YEARS = range(BS_MIN_YEAR, BS_MAX_YEAR + 1)

# First year that is never read as AD during detection.
AD_YEAR_CEILING = 2000
DEFAULT_BS_THRESHOLD = 2050

FISCAL_YEAR_START_MONTH = 4

BS_MONTH_NAMES = (
    "Baisakh",
    "Jestha",
    "Ashadh",
    "Shrawan",
    "Bhadra",
    "Ashwin",
    "Kartik",
    "Mangsir",
    "Poush",
    "Magh",
    "Falgun",
    "Chaitra",
)

BS_MONTH_NAMES_NEPALI = (
    "बैशाख",
    "जेष्ठ",
    "असार",
    "श्रावण",
    "भदौ",
    "असोज",
    "कार्तिक",
    "मंसिर",
    "पौष",
    "माघ",
    "फागुन",
    "चैत",
)

_DATE_PATTERN = re.compile(r"([0-9]{1,4})\s*[/.\-]\s*([0-9]{1,2})\s*[/.\-]\s*([0-9]{1,2})")
_EMBEDDED_DATE_PATTERN = re.compile(
    r"([0-9]{4})\s*[/.\-]\s*([0-9]{1,2})\s*[/.\-]\s*([0-9]{1,2})"
)

_YEAR_STARTS = [BS_YEAR_OFFSETS[year] for year in SUPPORTED_BS_YEARS]
_TABLE_END = BS_YEAR_OFFSETS[BS_MAX_YEAR + 1]


@dataclass(frozen=True)
class BSDate:
    """Bikram Sambat date (month 1 = Baisakh)."""

    year: int
    month: int
    day: int


@dataclass(frozen=True)
class ADDate:
    """Gregorian date (month 1 = January)."""

    year: int
    month: int
    day: int

    @classmethod
    def from_date(cls, value: date) -> "ADDate":
        return cls(value.year, value.month, value.day)

    def to_date(self) -> date | None:
        try:
            return date(self.year, self.month, self.day)
        except (ValueError, OverflowError):
            return None


@dataclass(frozen=True)
class ConvertedDate:
    """A single day expressed in both calendars."""

    bs: BSDate
    ad: ADDate
    bs_formatted: str  # "2082/09/07"
    ad_formatted: str  # "2025-12-22"


# -------------------------------------------------------------------
# Validation
# -------------------------------------------------------------------


def get_days_in_bs_month(year: int, month: int) -> int | None:
    """Get number of days in a BS month.

    Returns:
        Day count, or None if the year/month is outside the table
    """
    if year not in BS_MONTH_DAYS or not 1 <= month <= 12:
        return None
    return BS_MONTH_DAYS[year][month - 1]


def is_valid_bs_date(bs: BSDate) -> bool:
    """Check if a BS date exists in the calendar table."""
    days = get_days_in_bs_month(bs.year, bs.month)
    return days is not None and 1 <= bs.day <= days


# -------------------------------------------------------------------
# Conversion
# -------------------------------------------------------------------


def bs_to_ad(bs: BSDate) -> ADDate | None:
    """Convert Bikram Sambat date to Gregorian.

    Args:
        bs: BS date (month is 1-indexed)

    Returns:
        AD date, or None if the BS date is invalid or outside the table
    """
    if not is_valid_bs_date(bs):
        return None

    offset = BS_YEAR_OFFSETS[bs.year] + sum(BS_MONTH_DAYS[bs.year][: bs.month - 1]) + bs.day - 1
    return ADDate.from_date(AD_EPOCH + timedelta(days=offset))


def ad_to_bs(ad: ADDate) -> BSDate | None:
    """Convert Gregorian date to Bikram Sambat.

    Args:
        ad: AD date (month is 1-indexed)

    Returns:
        BS date, or None if the AD date is invalid or outside the table
    """
    gregorian = ad.to_date()
    if gregorian is None:
        return None

    offset = (gregorian - AD_EPOCH).days
    if offset < 0 or offset >= _TABLE_END:
        return None

    year = BS_MIN_YEAR + bisect_right(_YEAR_STARTS, offset) - 1
    remaining = offset - BS_YEAR_OFFSETS[year]
    for month, days in enumerate(BS_MONTH_DAYS[year], start=1):
        if remaining < days:
            return BSDate(year, month, remaining + 1)
        remaining -= days

    # Unreachable while the offsets table is consistent with the month table.
    return None


# -------------------------------------------------------------------
# Parsing and formatting
# -------------------------------------------------------------------


def parse_date_string(value: str | None, max_day: int = 32) -> tuple[int, int, int] | None:
    """Parse "YYYY/MM/DD" with '/', '-' or '.' separators.

    Args:
        value: Date string (ASCII digits)
        max_day: Largest plausible day number

    Returns:
        (year, month, day) tuple, or None if malformed or out of bounds
    """
    if not value:
        return None

    match = _DATE_PATTERN.fullmatch(value.strip())
    if not match:
        return None

    year, month, day = (int(part) for part in match.groups())
    if not 1 <= month <= 12 or not 1 <= day <= max_day:
        return None

    return year, month, day


def parse_bs_date(value: str | None) -> BSDate | None:
    """Parse BS date string (YYYY/MM/DD, YYYY-MM-DD or YYYY.MM.DD)."""
    parts = parse_date_string(value)
    return BSDate(*parts) if parts else None


def parse_ad_date(value: str | None) -> ADDate | None:
    """Parse AD date string (YYYY-MM-DD, YYYY/MM/DD or YYYY.MM.DD)."""
    parts = parse_date_string(value, max_day=31)
    return ADDate(*parts) if parts else None


def format_date_string(year: int, month: int, day: int) -> str:
    """Format date parts with '/' separators and zero padding."""
    return f"{year}/{month:02d}/{day:02d}"


def format_bs_date(bs: BSDate) -> str:
    """Format BS date as YYYY/MM/DD."""
    return format_date_string(bs.year, bs.month, bs.day)


def format_ad_date(ad: ADDate) -> str:
    """Format AD date as ISO YYYY-MM-DD."""
    return f"{ad.year:04d}-{ad.month:02d}-{ad.day:02d}"


def format_bs_date_long(bs: BSDate) -> str:
    """Format BS date with month name, e.g. "Poush 7, 2082"."""
    if not is_valid_bs_date(bs):
        return format_bs_date(bs)
    return f"{BS_MONTH_NAMES[bs.month - 1]} {bs.day}, {bs.year}"


def normalize_date_string(value: str | None) -> str | None:
    """Pull a YYYY/MM/DD date out of free text.

    Converts Devanagari digits, accepts '/', '-' and '.' separators and
    returns the zero-padded "YYYY/MM/DD" form.
    """
    text = convert_nepali_digits(value)
    if not text:
        return None

    match = _EMBEDDED_DATE_PATTERN.search(text)
    if not match:
        return None

    year, month, day = (int(part) for part in match.groups())
    if not 1 <= month <= 12 or not 1 <= day <= 32:
        return None

    return format_date_string(year, month, day)


def get_bs_month_name(month: int, nepali: bool = False) -> str:
    if not 1 <= month <= 12:
        return ""
    names = BS_MONTH_NAMES_NEPALI if nepali else BS_MONTH_NAMES
    return names[month - 1]


# -------------------------------------------------------------------
# Complete conversion
# -------------------------------------------------------------------


def _both_calendars(bs: BSDate, ad: ADDate) -> ConvertedDate:
    return ConvertedDate(
        bs=bs,
        ad=ad,
        bs_formatted=format_bs_date(bs),
        ad_formatted=format_ad_date(ad),
    )


def convert_from_bs(value: str | None) -> ConvertedDate | None:
    """Convert a BS date string to both calendars."""
    bs = parse_bs_date(value)
    if bs is None:
        return None

    ad = bs_to_ad(bs)
    if ad is None:
        return None

    return _both_calendars(bs, ad)


def convert_from_ad(value: str | None) -> ConvertedDate | None:
    """Convert an AD date string to both calendars."""
    ad = parse_ad_date(value)
    if ad is None:
        return None

    bs = ad_to_bs(ad)
    if bs is None:
        return None

    return _both_calendars(bs, ad)


def detect_calendar(
    value: str | None, bs_threshold: int = DEFAULT_BS_THRESHOLD
) -> CalendarType | None:
    """Detect whether a date string is written in BS or AD.

    Heuristics:
    - Year > bs_threshold: BS (current BS years are ~2080)
    - Year < 2000: AD
    - In between: BS if the date exists in the BS table, otherwise AD

    Returns:
        "BS", "AD", or None if the string is not a date
    """
    parts = parse_date_string(convert_nepali_digits(value))
    if parts is None:
        return None

    year, month, day = parts
    if year > bs_threshold:
        return "BS"
    if year < AD_YEAR_CEILING:
        return "AD"

    return "BS" if is_valid_bs_date(BSDate(year, month, day)) else "AD"


# -------------------------------------------------------------------
# Fiscal year
# -------------------------------------------------------------------


def get_fiscal_year(bs: BSDate) -> str:
    """Get Nepali fiscal year label for a BS date.

    FY runs from Shrawan 1 (month 4) to the end of Ashadh (month 3), so
    2082/09/07 falls in "2082/83" and 2082/02/15 in "2081/82".
    """
    if bs.month >= FISCAL_YEAR_START_MONTH:
        return f"{bs.year}/{(bs.year + 1) % 100:02d}"
    return f"{bs.year - 1}/{bs.year % 100:02d}"


def fiscal_year_of(bs_date: str | None) -> str | None:
    """Fiscal year label for a "YYYY/MM/DD" BS string, or None."""
    bs = parse_bs_date(bs_date)
    return get_fiscal_year(bs) if bs else None


def get_current_bs_date(today: date | None = None) -> BSDate | None:
    """Today's date in BS (None only when today is outside the table)."""
    return ad_to_bs(ADDate.from_date(today or date.today()))


def get_current_fiscal_year(today: date | None = None) -> str | None:
    bs = get_current_bs_date(today)
    return get_fiscal_year(bs) if bs else None


def get_today(today: date | None = None) -> ConvertedDate | None:
    """Today's date in both calendars."""
    ad = ADDate.from_date(today or date.today())
    bs = ad_to_bs(ad)
    if bs is None:
        return None
    return _both_calendars(bs, ad)
