"""Value score: a weighted 0-100 composite of price, location, lease,
appreciation and amenities.

Every function here is pure. Sub-scores round half-up to integers and the
composite rounds half-up to one decimal.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Final

from hdb_insights.models import AmenityCounts, ScoreBreakdown, UnitFacts

# ── Weights ───────────────────────────────────────────────────────────────────
WEIGHTS: Final[dict[str, float]] = {
    "price": 0.30,
    "location": 0.25,
    "lease": 0.20,
    "appreciation": 0.15,
    "amenities": 0.10,
}

# ── Fallbacks for missing enrichment ──────────────────────────────────────────
FAR_MRT_DISTANCE: Final = 1500
NO_MRT_NAME: Final = "None nearby"
DEFAULT_LEASE_YEARS: Final = 95

NEUTRAL_SCORE: Final = 50
MIN_HISTORY_POINTS: Final = 4

# ── Labels (threshold, label, colour), highest first ──────────────────────────
_SCORE_BANDS: Final[tuple[tuple[float, str, str], ...]] = (
    (80, "Excellent Value", "#22c55e"),
    (65, "Good Value", "#84cc16"),
    (50, "Fair Value", "#eab308"),
    (35, "Below Average", "#f97316"),
)
_LOWEST_BAND: Final = ("Poor Value", "#ef4444")


def _round_half_up(value: float, ndigits: int = 0) -> float:
    factor = 10**ndigits
    return math.floor(value * factor + 0.5) / factor


def _clamp(value: float) -> int:
    return int(max(0, min(100, _round_half_up(value))))


# ── Sub-scores ────────────────────────────────────────────────────────────────


def price_score(resale_price: float, town_median: float) -> int:
    """100 at 30% below the town median, 50 at +10%, 0 at 50% above.

    A non-positive median means no baseline, scored a neutral 50.
    """
    if town_median <= 0:
        return NEUTRAL_SCORE
    ratio = resale_price / town_median
    if ratio <= 0.70:
        return 100
    if ratio >= 1.50:
        return 0
    return _clamp(100 - (ratio - 0.70) * 125)


def location_score(mrt_distance: float) -> int:
    """100 within 200m of an MRT station, falling linearly to 0 at 1km."""
    if mrt_distance <= 200:
        return 100
    if mrt_distance >= 1000:
        return 0
    return _clamp(100 - (mrt_distance - 200) / 8)


def lease_score(remaining_years: float | None) -> int:
    """100 at 90+ years remaining, 0 under 30, linear in between.

    A missing lease is scored as DEFAULT_LEASE_YEARS.
    """
    years = DEFAULT_LEASE_YEARS if remaining_years is None else remaining_years
    if years >= 90:
        return 100
    if years < 30:
        return 0
    return _clamp((years - 30) * 1.67)


def appreciation_score(price_history: Sequence[float | None]) -> int:
    """Trend of a monthly price series, via an ordinary least-squares slope.

    Each point is regressed against its month offset, so missing months
    (None) leave a gap instead of pulling later points closer. The slope is
    annualised relative to the mean: +5%/yr or more scores 100, flat scores
    50, -5%/yr or worse scores 0. Fewer than MIN_HISTORY_POINTS known points
    is not a trend and scores 50.
    """
    points = [(x, y) for x, y in enumerate(price_history) if y is not None]
    n = len(points)
    if n < MIN_HISTORY_POINTS:
        return NEUTRAL_SCORE

    x_mean = sum(x for x, _ in points) / n
    mean = sum(y for _, y in points) / n
    if mean == 0:
        return NEUTRAL_SCORE

    xx = sum((x - x_mean) ** 2 for x, _ in points)
    xy = sum((x - x_mean) * (y - mean) for x, y in points)
    slope = xy / xx
    annual_growth = slope / mean * 100 * 12
    if annual_growth >= 5:
        return 100
    if annual_growth <= -5:
        return 0
    return _clamp(50 + annual_growth * 10)


def amenities_score(amenities: AmenityCounts) -> int:
    """Presence points per category within ~500m, capped at 100."""
    score = 0
    if amenities.schools > 0:
        score += 30
    if amenities.malls > 0:
        score += 30
    if amenities.parks > 0:
        score += 20
    if amenities.hawkers > 0:
        score += 20
    return min(score, 100)


# ── Composite ─────────────────────────────────────────────────────────────────


def score_unit(facts: UnitFacts) -> ScoreBreakdown:
    """Score one unit. Deterministic for identical facts."""
    parts = {
        "price": price_score(facts.resale_price, facts.town_median),
        "location": location_score(facts.mrt_distance),
        "lease": lease_score(facts.remaining_lease_years),
        "appreciation": appreciation_score(facts.price_history),
        "amenities": amenities_score(facts.amenities),
    }
    total = sum(parts[name] * weight for name, weight in WEIGHTS.items())
    return ScoreBreakdown(total=min(100.0, _round_half_up(total, 1)), **parts)


def score_label(total: float) -> str:
    for threshold, label, _ in _SCORE_BANDS:
        if total >= threshold:
            return label
    return _LOWEST_BAND[0]


def score_color(total: float) -> str:
    for threshold, _, color in _SCORE_BANDS:
        if total >= threshold:
            return color
    return _LOWEST_BAND[1]
