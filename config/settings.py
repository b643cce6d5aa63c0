"""
Target Reconciliation Configuration Settings

Loads environment variables and defines application constants.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List

from dotenv import load_dotenv


def get_secret(key: str, default: str = "") -> str:
    """
    Return a configuration value from the environment.

    Values from a local `.env` file are loaded once at import time, so scripts
    and the dashboard host read the same keys.
    """
    val = os.getenv(key)
    if val is None or val == "":
        return default
    return val


# Load environment variables from .env file (existing env vars win)
load_dotenv()


@dataclass
class Settings:
    """Application settings loaded from environment variables."""

    # Target Store API
    target_api_url: str = field(
        default_factory=lambda: get_secret("TARGET_API_URL", "http://localhost:8000/api/v1").rstrip("/")
    )
    # Bearer token issued by the dashboard's auth layer (never logged)
    target_api_token: str = field(default_factory=lambda: get_secret("TARGET_API_TOKEN", ""))

    # API Request Settings
    api_timeout: int = field(default_factory=lambda: int(get_secret("TARGET_API_TIMEOUT", "30")))

    # Editing defaults
    default_department: str = field(default_factory=lambda: get_secret("TARGET_DEFAULT_DEPARTMENT", "store"))
    year_options_span: int = 5


# Fiscal year starts in September and is labelled by its starting calendar year
FISCAL_YEAR_START_MONTH = 9

# Fiscal quarter -> calendar months, in fiscal order
QUARTER_MONTHS: Dict[int, List[int]] = {
    1: [9, 10, 11],
    2: [12, 1, 2],
    3: [3, 4, 5],
    4: [6, 7, 8],
}

# Month used to look up quarterly figures (first month of each quarter)
QUARTER_REPRESENTATIVE_MONTH: Dict[int, int] = {
    1: 9,
    2: 12,
    3: 3,
    4: 6,
}

MONTH_MAP: Dict[int, str] = {
    1: "January",
    2: "February",
    3: "March",
    4: "April",
    5: "May",
    6: "June",
    7: "July",
    8: "August",
    9: "September",
    10: "October",
    11: "November",
    12: "December"
}

# Achievement rate thresholds (percent)
ACHIEVEMENT_GOOD_THRESHOLD = 100.0
ACHIEVEMENT_WARNING_THRESHOLD = 80.0

# Departments with a target-setting screen
DEPARTMENTS: List[str] = [
    'store',
    'financial',
    'ecommerce',
]


# Singleton instance
settings = Settings()
