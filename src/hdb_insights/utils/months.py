"""Month arithmetic on "YYYY-MM" strings.

The dataset's ``month`` column is a zero-padded "YYYY-MM" string, so
lexicographic comparison matches chronological order.
"""

from datetime import date
from typing import Final

RANGE_MONTHS: Final[dict[str, int | None]] = {
    "1M": 1,
    "3M": 3,
    "6M": 6,
    "1Y": 12,
    "3Y": 36,
    "5Y": 60,
    "MAX": None,
}

DEFAULT_RANGE: Final = "1Y"
EARLIEST_MONTH: Final = "1990-01"


def month_of(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def shift_month(month: str, delta: int) -> str:
    """Shift a "YYYY-MM" month by ``delta`` months (negative for earlier)."""
    year, mon = (int(part) for part in month.split("-"))
    index = year * 12 + (mon - 1) + delta
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def range_start_month(range_code: str, *, today: date | None = None) -> str:
    """First month covered by a range code such as "1Y" or "MAX".

    Unknown codes fall back to "1Y", the same default the query endpoints use.
    """
    code = range_code.strip().upper()
    months = RANGE_MONTHS[code if code in RANGE_MONTHS else DEFAULT_RANGE]
    if months is None:
        return EARLIEST_MONTH
    return shift_month(month_of(today or date.today()), -months)
