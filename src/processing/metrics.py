"""
Derived Metrics Module

Live metrics computed from target inputs: YoY rate and difference,
achievement rate, sales ratio, and the financial form's auto-calculated rows.

All functions are total: a missing operand (None or NaN) yields None, never
an exception. Derived values are display-only and never written back.
"""

from typing import Any, Optional

import pandas as pd

from config.settings import ACHIEVEMENT_GOOD_THRESHOLD, ACHIEVEMENT_WARNING_THRESHOLD


def _missing(value: Any) -> bool:
    return value is None or pd.isna(value)


def yoy_rate(current: Any, previous: Any) -> Optional[float]:
    """
    Year-over-year rate in percent.

    The denominator is abs(previous) so the sign follows the direction of
    change even when the prior value was negative: yoy_rate(50, -100) == 150.0

    Args:
        current: Current (or target) value
        previous: Prior-year value

    Returns:
        Rate in percent, or None if an operand is missing or previous is 0
    """
    if _missing(current) or _missing(previous) or previous == 0:
        return None
    return (float(current) - float(previous)) / abs(float(previous)) * 100


def yoy_diff(current: Any, previous: Any) -> Optional[float]:
    """Absolute year-over-year difference."""
    if _missing(current) or _missing(previous):
        return None
    return current - previous


def achievement_rate(actual: Any, target: Any) -> Optional[float]:
    """
    Actual value as a percentage of its target.

    Returns:
        Rate in percent, or None if an operand is missing or target is 0
    """
    if _missing(actual) or _missing(target) or target == 0:
        return None
    return float(actual) / float(target) * 100


def sales_ratio(value: Any, sales_total: Any) -> Optional[float]:
    """Value as a percentage of total sales (None if total is missing or 0)."""
    if _missing(value) or _missing(sales_total) or sales_total == 0:
        return None
    return float(value) / float(sales_total) * 100


def achievement_status(rate: Any) -> str:
    """
    Classify an achievement rate.

    Returns:
        "good" (>= 100%), "warning" (>= 80%), "critical", or "none" if unknown
    """
    if _missing(rate):
        return "none"
    if rate >= ACHIEVEMENT_GOOD_THRESHOLD:
        return "good"
    if rate >= ACHIEVEMENT_WARNING_THRESHOLD:
        return "warning"
    return "critical"


def gross_profit(sales_total: Any, cost_of_sales: Any) -> Optional[float]:
    if _missing(sales_total) or _missing(cost_of_sales):
        return None
    return sales_total - cost_of_sales


def operating_profit(gross: Any, sga_total: Any) -> Optional[float]:
    if _missing(gross) or _missing(sga_total):
        return None
    return gross - sga_total
