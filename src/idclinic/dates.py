"""
Calendar-date helpers.

Every date in a patient record is a calendar date ("YYYY-MM-DD"), never an
instant. Parsing goes straight to `datetime.date` so no timezone can shift the
day. Display helpers render Buddhist-era (BE = CE + 543) dates for the clinic.
"""

import calendar
import re
import typing

from dataclasses import dataclass
from datetime import date, datetime, timedelta

# Difference between the Buddhist era and the Gregorian calendar
BUDDHIST_ERA_OFFSET = 543

PLACEHOLDER = "-"

_ISO_DATE = re.compile(r"^\s*(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})\s*$")
# ISO timestamps such as "2024-01-05T00:00:00.000Z": the calendar part is kept verbatim
_ISO_DATETIME_PREFIX = re.compile(r"^\s*(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})[T ]")
_BE_DATE = re.compile(r"^\s*(?P<day>\d{1,2})/(?P<month>\d{1,2})/(?P<year>\d{4})\s*$")

THAI_SHORT_MONTHS = (
    "ม.ค.", "ก.พ.", "มี.ค.", "เม.ย.", "พ.ค.", "มิ.ย.",
    "ก.ค.", "ส.ค.", "ก.ย.", "ต.ค.", "พ.ย.", "ธ.ค.",
)

DateLike = typing.Union[str, date, None]


@dataclass(frozen=True)
class AgeBreakdown:
    """Completed years, months and days between a birth date and a reference date."""
    years: int
    months: int
    days: int


def _build_date(year: str, month: str, day: str) -> date | None:
    try:
        return date(int(year), int(month), int(day))
    except ValueError:
        return None


def parse_local_date(value: typing.Any) -> date | None:
    """
    Interpret `value` as a calendar date.

    - `date`/`datetime` (including pandas Timestamps) -> their calendar date
    - "YYYY-MM-DD" -> exactly that day, whatever the host timezone is
    - ISO timestamps -> the calendar part as written
    - anything else -> `datetime.fromisoformat`, or None when that fails
    Blank, missing and impossible dates (e.g. "2024-02-30") give None.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    if not value.strip():
        return None

    m = _ISO_DATE.match(value) or _ISO_DATETIME_PREFIX.match(value)
    if m:
        return _build_date(m.group("year"), m.group("month"), m.group("day"))
    try:
        return datetime.fromisoformat(value.strip()).date()
    except ValueError:
        return None


def to_iso_date(value: typing.Any) -> str:
    """Render a date-like value as "YYYY-MM-DD"; unparseable input gives ""."""
    parsed = parse_local_date(value)
    return parsed.isoformat() if parsed else ""


def format_buddhist_date(value: DateLike) -> str:
    """Format as "DD/MM/YYYY" with a Buddhist-era year, or "-" for missing/invalid input."""
    parsed = parse_local_date(value)
    if parsed is None:
        return PLACEHOLDER
    return f"{parsed.day:02d}/{parsed.month:02d}/{parsed.year + BUDDHIST_ERA_OFFSET:04d}"


def format_thai_date(value: DateLike) -> str:
    """Long display form used on cards and timelines, e.g. "5 ม.ค. 2567"."""
    parsed = parse_local_date(value)
    if parsed is None:
        return PLACEHOLDER
    return f"{parsed.day} {THAI_SHORT_MONTHS[parsed.month - 1]} {parsed.year + BUDDHIST_ERA_OFFSET}"


def buddhist_date_to_iso(text: str | None) -> str:
    """
    Convert a typed "DD/MM/YYYY" Buddhist-era date into "YYYY-MM-DD".
    Returns "" for blank or invalid input (BE year must be greater than 2400).
    """
    if not text:
        return ""
    m = _BE_DATE.match(text)
    if not m:
        return ""
    year_be = int(m.group("year"))
    if year_be <= 2400:
        return ""
    parsed = _build_date(str(year_be - BUDDHIST_ERA_OFFSET), m.group("month"), m.group("day"))
    return parsed.isoformat() if parsed else ""


def add_months(start: date, months: int) -> date:
    """Shift by whole months, clamping the day to the target month's length."""
    index = start.year * 12 + (start.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def age_years(dob: DateLike, as_of: date | None = None) -> int | str:
    """Whole completed years since `dob`; "-" when `dob` is missing or unparseable."""
    birth = parse_local_date(dob)
    if birth is None:
        return PLACEHOLDER
    today = as_of or date.today()
    age = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        age -= 1
    return age


def age_breakdown(dob: DateLike, as_of: date | None = None) -> AgeBreakdown | None:
    """
    Decompose the age at `as_of` into years, months and days.

    A negative day count borrows the length of the month that precedes the
    anchor month (the birth month), so `date_from_age_breakdown` inverts it exactly.
    Returns None for missing/unparseable `dob` or a `dob` after `as_of`.
    """
    birth = parse_local_date(dob)
    if birth is None:
        return None
    today = as_of or date.today()
    if birth > today:
        return None

    years = today.year - birth.year
    months = today.month - birth.month
    days = today.day - birth.day
    if days < 0:
        months -= 1
        days += calendar.monthrange(birth.year, birth.month)[1]
    if months < 0:
        years -= 1
        months += 12
    return AgeBreakdown(years=years, months=months, days=days)


def _to_int(value: typing.Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    s = str(value).strip()
    if not s:
        return None
    try:
        return int(float(s))
    except ValueError:
        return None


def date_from_age_breakdown(
        years: typing.Any,
        months: typing.Any,
        days: typing.Any,
        as_of: date | None = None,
) -> str:
    """
    Birth date ("YYYY-MM-DD") for an age of `years`/`months`/`days` at `as_of`.

    All three blank means "no input" and gives ""; a single blank part counts as 0.
    """
    parts = [_to_int(years), _to_int(months), _to_int(days)]
    if all(part is None for part in parts):
        return ""
    y, m, d = (part or 0 for part in parts)
    today = as_of or date.today()

    index = today.year * 12 + (today.month - 1) - (y * 12 + m)
    anchor_year, anchor_month = divmod(index, 12)
    try:
        anchor = date(anchor_year, anchor_month + 1, 1)
        birth = anchor + timedelta(days=today.day - 1 - d)
    except (ValueError, OverflowError):
        return ""
    return birth.isoformat()
