"""Parsing helpers for upstream resale records."""

import math
import re
from typing import Final

# "61 years 04 months", "95 years", "70 years 1 month"
LEASE_YEARS_PATTERN: Final = re.compile(r"(\d+)\s*years?", re.IGNORECASE)


def extract_lease_years(lease: str | None) -> int | None:
    """Extract the whole-years component of a remaining-lease string.

    Months are dropped, not rounded: "61 years 11 months" -> 61.
    Returns None when the string is empty or has no years component.
    """
    if not lease:
        return None
    match = LEASE_YEARS_PATTERN.search(lease)
    return int(match.group(1)) if match else None


def parse_int(value: object) -> int | None:
    """Coerce an upstream numeric field to int ("520000", "520000.0", 520000)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    parsed = parse_float(value)
    return int(parsed) if parsed is not None else None


def parse_float(value: object) -> float | None:
    """Coerce an upstream numeric field to float. NaN and infinities become None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            parsed = float(value)
        else:
            parsed = float(str(value).replace(",", "").strip())
    except (ValueError, OverflowError):
        return None
    return parsed if math.isfinite(parsed) else None
