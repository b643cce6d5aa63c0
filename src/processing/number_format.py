"""
Numeric Input Normalization Module

Parses and formats thousands-separated numeric text for target input cells,
plus display helpers for percentages and YoY rates.
"""

import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional, Union

import pandas as pd

Number = Union[int, float, Decimal]

# Optional leading minus, then plain digits or digits grouped by three with commas
_NUMERIC_TEXT = re.compile(r"^(-?)([0-9]{1,3}(?:,[0-9]{3})+|[0-9]+)$")


def parse_locale_number(text: Optional[str], allow_negative: bool = True) -> Optional[int]:
    """
    Parse numeric text such as "1,100,000" into an integer.

    Handles:
    - Surrounding whitespace (ignored)
    - Empty input (returns None, meaning "no value")
    - Thousands separators, only between groups of three digits

    Args:
        text: Raw cell text
        allow_negative: If False, a leading minus is rejected

    Returns:
        Parsed integer, or None for empty input

    Raises:
        InvalidNumericInput: On letters, decimal points, misplaced separators, stray symbols or a bare minus
    """
    if text is None:
        return None
    cleaned = str(text).strip()
    if cleaned == "":
        return None

    match = _NUMERIC_TEXT.match(cleaned)
    if not match:
        raise InvalidNumericInput(cleaned, "Enter digits with optional thousands separators")

    sign, digits = match.groups()
    if sign and not allow_negative:
        raise InvalidNumericInput(cleaned, "Enter a value of 0 or more")

    value = int(digits.replace(",", ""))
    return -value if sign else value


def _round_half_up(value: Number) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_locale_number(value: Optional[Number]) -> str:
    """
    Render a number with thousands separators, rounded to an integer.

    Args:
        value: Number to render (None and NaN render as "")

    Returns:
        Formatted text (e.g. 1100000 -> "1,100,000")
    """
    if value is None or pd.isna(value):
        return ""
    return f"{_round_half_up(value):,}"


def format_percent(value: Any, show_sign: bool = False) -> str:
    """
    Format a percentage with one decimal.

    Args:
        value: Percentage value (None renders as "-")
        show_sign: Prefix positive values with "+"

    Returns:
        Text such as "12.5%" or "+12.5%"
    """
    if value is None or pd.isna(value):
        return "-"
    num = float(value)
    if show_sign and num > 0:
        return f"+{num:.1f}%"
    return f"{num:.1f}%"


def format_yoy(rate: Any) -> str:
    """Format a YoY rate: "+5.3%", "-10.0%", "±0.0%" or "-" when unknown."""
    if rate is None or pd.isna(rate):
        return "-"
    num = float(rate)
    if num > 0:
        return f"+{num:.1f}%"
    if num < 0:
        return f"{num:.1f}%"
    return "±0.0%"


def yoy_trend(rate: Any) -> Optional[str]:
    """Direction of a YoY rate ("up", "down", "flat"), None when unknown."""
    if rate is None or pd.isna(rate):
        return None
    if rate > 0:
        return "up"
    if rate < 0:
        return "down"
    return "flat"


class InvalidNumericInput(ValueError):
    """Raised when cell text is not a valid number."""

    def __init__(self, text: str, message: str = "Invalid numeric input"):
        self.text = text
        self.message = message
        super().__init__(f"{message}: {text!r}")
