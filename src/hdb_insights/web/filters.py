"""Query filter models and FastAPI dependencies for the read endpoints."""

from __future__ import annotations

from typing import Annotated, Final

from fastapi import Depends
from pydantic import BaseModel, field_validator

from hdb_insights.utils.months import DEFAULT_RANGE, RANGE_MONTHS
from hdb_insights.utils.parsing import parse_float, parse_int

DEFAULT_SCORE_LIMIT: Final = 20
MAX_SCORE_LIMIT: Final = 100


def normalize_range(value: str | None) -> str:
    """Uppercase a range code, falling back to the default for unknown codes."""
    if not value:
        return DEFAULT_RANGE
    code = value.strip().upper()
    return code if code in RANGE_MONTHS else DEFAULT_RANGE


def _split_csv(value: object) -> list[str]:
    if not value:
        return []
    if isinstance(value, list):
        parts = value
    else:
        parts = str(value).split(",")
    return [" ".join(str(p).upper().split()) for p in parts if str(p).strip()]


class ComparisonFilter(BaseModel):
    """Optional narrowing filters for the comparison query.

    Unparseable numeric values are discarded rather than rejected.
    """

    storey: str | None = None
    min_area: float | None = None
    max_area: float | None = None
    min_lease: int | None = None

    @field_validator("storey", mode="before")
    @classmethod
    def clean_storey(cls, v: object) -> str | None:
        if v is None:
            return None
        s = " ".join(str(v).upper().split())
        return s or None

    @field_validator("min_area", "max_area", mode="before")
    @classmethod
    def coerce_area(cls, v: object) -> float | None:
        parsed = parse_float(v) if v not in (None, "") else None
        return parsed if parsed is not None and parsed > 0 else None

    @field_validator("min_lease", mode="before")
    @classmethod
    def coerce_lease(cls, v: object) -> int | None:
        parsed = parse_int(v) if v not in (None, "") else None
        return parsed if parsed is not None and parsed >= 0 else None

    @property
    def cache_fragment(self) -> str:
        """Stable key fragment, e.g. "10 TO 12-60.0--70"."""
        parts = [self.storey, self.min_area, self.max_area, self.min_lease]
        return "-".join("" if p is None else str(p) for p in parts)


class ScoreFilter(BaseModel):
    """Filters for the value-score ranking."""

    min_score: float = 0.0
    towns: list[str] = []
    flat_types: list[str] = []
    budget_min: int | None = None
    budget_max: int | None = None
    limit: int = DEFAULT_SCORE_LIMIT

    @field_validator("min_score", mode="before")
    @classmethod
    def coerce_min_score(cls, v: object) -> float:
        parsed = parse_float(v) if v not in (None, "") else None
        if parsed is None:
            return 0.0
        return max(0.0, min(100.0, parsed))

    @field_validator("towns", "flat_types", mode="before")
    @classmethod
    def split_lists(cls, v: object) -> list[str]:
        return _split_csv(v)

    @field_validator("budget_min", "budget_max", mode="before")
    @classmethod
    def coerce_budget(cls, v: object) -> int | None:
        return parse_int(v) if v not in (None, "") else None

    @field_validator("limit", mode="before")
    @classmethod
    def clamp_limit(cls, v: object) -> int:
        parsed = parse_int(v) if v not in (None, "") else None
        if parsed is None:
            return DEFAULT_SCORE_LIMIT
        return max(1, min(MAX_SCORE_LIMIT, parsed))

    @property
    def cache_fragment(self) -> str:
        return ":".join(
            [
                str(self.min_score),
                ",".join(self.towns),
                ",".join(self.flat_types),
                "" if self.budget_min is None else str(self.budget_min),
                "" if self.budget_max is None else str(self.budget_max),
                str(self.limit),
            ]
        )


def parse_comparison_filter(
    storey: str | None = None,
    min_area: str | None = None,
    max_area: str | None = None,
    min_lease: str | None = None,
) -> ComparisonFilter:
    """FastAPI dependency that parses query params into a ComparisonFilter."""
    return ComparisonFilter.model_validate(
        {
            "storey": storey,
            "min_area": min_area,
            "max_area": max_area,
            "min_lease": min_lease,
        }
    )


def parse_score_filter(
    min_score: str | None = None,
    towns: str | None = None,
    flat_types: str | None = None,
    budget_min: str | None = None,
    budget_max: str | None = None,
    limit: str | None = None,
) -> ScoreFilter:
    """FastAPI dependency that parses query params into a ScoreFilter."""
    return ScoreFilter.model_validate(
        {
            "min_score": min_score,
            "towns": towns,
            "flat_types": flat_types,
            "budget_min": budget_min,
            "budget_max": budget_max,
            "limit": limit,
        }
    )


ComparisonFilterDep = Annotated[ComparisonFilter, Depends(parse_comparison_filter)]
ScoreFilterDep = Annotated[ScoreFilter, Depends(parse_score_filter)]
