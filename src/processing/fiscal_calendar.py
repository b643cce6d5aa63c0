"""
Fiscal Calendar Module

Conversions between calendar months and the September-start fiscal year.

Fiscal year Y runs from September of Y to August of Y+1 and is labelled by
its starting calendar year. Quarters:
- Q1: September - November
- Q2: December - February
- Q3: March - May
- Q4: June - August

Periods are serialized as calendar-date keys "YYYY-MM-01".
"""

import re
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Tuple

from config.settings import (
    FISCAL_YEAR_START_MONTH,
    QUARTER_MONTHS,
    QUARTER_REPRESENTATIVE_MONTH,
    MONTH_MAP,
    settings
)

PERIOD_KEY_PATTERN = re.compile(r"^(\d{4})-(\d{2})-01$")


def _check_month(month: int) -> int:
    if isinstance(month, bool) or not isinstance(month, int) or month < 1 or month > 12:
        raise InvalidPeriod(f"Invalid month: {month!r} (expected 1-12)")
    return month


def to_fiscal_year(calendar_year: int, month: int) -> int:
    """
    Get the fiscal year a calendar month belongs to.

    Args:
        calendar_year: Calendar year
        month: Calendar month (1-12)

    Returns:
        Fiscal year (e.g. September 2025 -> 2025, January 2026 -> 2025)

    Raises:
        InvalidPeriod: If month is outside 1-12
    """
    _check_month(month)
    return calendar_year if month >= FISCAL_YEAR_START_MONTH else calendar_year - 1


def to_calendar_year(fiscal_year: int, month: int) -> int:
    """Get the calendar year of a month within a fiscal year."""
    _check_month(month)
    return fiscal_year if month >= FISCAL_YEAR_START_MONTH else fiscal_year + 1


def to_quarter(month: int) -> int:
    """
    Get the fiscal quarter (1-4) for a calendar month.

    Args:
        month: Calendar month (1-12)

    Returns:
        Fiscal quarter number

    Raises:
        InvalidPeriod: If month is outside 1-12
    """
    _check_month(month)
    for quarter, months in QUARTER_MONTHS.items():
        if month in months:
            return quarter
    raise InvalidPeriod(f"Invalid month: {month}")


def quarter_months(quarter: int) -> List[int]:
    """
    Get the calendar months of a fiscal quarter, in fiscal order.

    Args:
        quarter: Fiscal quarter (1-4)

    Returns:
        List of 3 month numbers (e.g. [12, 1, 2] for Q2)
    """
    if quarter not in QUARTER_MONTHS:
        raise InvalidPeriod(f"Invalid quarter: {quarter!r} (expected 1-4)")
    return list(QUARTER_MONTHS[quarter])


def quarter_representative_month(quarter: int) -> int:
    """
    Get the month used to look up quarterly figures.

    Q1 -> 9, Q2 -> 12, Q3 -> 3, Q4 -> 6: the first month of each quarter.
    """
    if quarter not in QUARTER_REPRESENTATIVE_MONTH:
        raise InvalidPeriod(f"Invalid quarter: {quarter!r} (expected 1-4)")
    return QUARTER_REPRESENTATIVE_MONTH[quarter]


def format_period_key(fiscal_year: int, month: int) -> str:
    """
    Build the canonical period key for a month of a fiscal year.

    Args:
        fiscal_year: Fiscal year
        month: Calendar month (1-12)

    Returns:
        Period key "YYYY-MM-01" (e.g. FY2025 January -> "2026-01-01")
    """
    calendar_year = to_calendar_year(fiscal_year, month)
    return f"{calendar_year:04d}-{month:02d}-01"


def enumerate_fiscal_year_months(fiscal_year: int) -> List[str]:
    """
    List the 12 period keys of a fiscal year.

    Args:
        fiscal_year: Fiscal year

    Returns:
        Keys from September of fiscal_year through August of fiscal_year + 1
    """
    months = [((FISCAL_YEAR_START_MONTH - 1 + i) % 12) + 1 for i in range(12)]
    return [format_period_key(fiscal_year, m) for m in months]


def year_options(current_fiscal_year: int, span: Optional[int] = None) -> List[int]:
    """
    Get selectable fiscal years for pickers, newest first.

    Args:
        current_fiscal_year: Most recent selectable fiscal year
        span: Number of years to offer (defaults to settings)

    Returns:
        List of `span` fiscal years ending at current_fiscal_year
    """
    if span is None:
        span = settings.year_options_span
    if span < 1:
        raise ValueError(f"span must be at least 1, got {span}")
    return [current_fiscal_year - i for i in range(span)]


@dataclass(frozen=True)
class FiscalPeriod:
    """One calendar month seen from both calendars."""

    fiscal_year: int
    calendar_year: int
    month: int
    quarter: int

    @classmethod
    def from_calendar(cls, calendar_year: int, month: int) -> "FiscalPeriod":
        return cls(
            fiscal_year=to_fiscal_year(calendar_year, month),
            calendar_year=calendar_year,
            month=month,
            quarter=to_quarter(month)
        )

    @classmethod
    def from_key(cls, key: str) -> "FiscalPeriod":
        """
        Parse a "YYYY-MM-01" period key.

        Raises:
            InvalidPeriod: If the key is malformed or the month is out of range
        """
        match = PERIOD_KEY_PATTERN.match(key) if isinstance(key, str) else None
        if not match:
            raise InvalidPeriod(f"Invalid period key: {key!r} (expected YYYY-MM-01)")
        return cls.from_calendar(int(match.group(1)), int(match.group(2)))

    @property
    def key(self) -> str:
        return f"{self.calendar_year:04d}-{self.month:02d}-01"

    @property
    def label(self) -> str:
        return f"{MONTH_MAP[self.month]} {self.calendar_year}"


def parse_period_key(key: str) -> FiscalPeriod:
    """Parse and validate a period key."""
    return FiscalPeriod.from_key(key)


def fiscal_year_from_key(key: str) -> int:
    """Get the fiscal year of a period key (e.g. "2026-01-01" -> 2025)."""
    return FiscalPeriod.from_key(key).fiscal_year


def display_period(fiscal_year: int, month: int) -> str:
    """Human label for a month of a fiscal year (e.g. "January 2026")."""
    return f"{MONTH_MAP[_check_month(month)]} {to_calendar_year(fiscal_year, month)}"


def month_options(fiscal_year: int) -> List[Tuple[str, str]]:
    """
    Build (period key, label) pairs for a month picker.

    Args:
        fiscal_year: Fiscal year

    Returns:
        12 pairs in fiscal order
    """
    options = []
    for key in enumerate_fiscal_year_months(fiscal_year):
        options.append((key, FiscalPeriod.from_key(key).label))
    return options


def current_fiscal_year(today: Optional[date] = None) -> int:
    today = today or date.today()
    return to_fiscal_year(today.year, today.month)


def current_quarter(today: Optional[date] = None) -> int:
    today = today or date.today()
    return to_quarter(today.month)


def previous_month(today: Optional[date] = None) -> int:
    """Get the last closed calendar month (December when today is January)."""
    today = today or date.today()
    return 12 if today.month == 1 else today.month - 1


def default_period_key(today: Optional[date] = None) -> str:
    """
    Get the period key target screens open on: the previous calendar month.

    Args:
        today: Reference date (defaults to today)

    Returns:
        Period key "YYYY-MM-01"
    """
    today = today or date.today()
    month = previous_month(today)
    year = today.year - 1 if today.month == 1 else today.year
    return f"{year:04d}-{month:02d}-01"


class InvalidPeriod(ValueError):
    """Raised when a month, quarter or period key is malformed."""
    pass
