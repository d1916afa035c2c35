"""Pydantic models for transactions, statistics, scores and sync state."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SyncStatus(StrEnum):
    """Lifecycle states of a sync_state row."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncKind(StrEnum):
    """Sync kinds, one sync_state row each."""

    TRANSACTION_SYNC = "transaction_sync"
    ENRICHMENT = "enrichment"


class AmenityTheme(StrEnum):
    """OneMap theme query names for each amenity category."""

    SCHOOLS = "childcare"
    MALLS = "shopping_malls"
    PARKS = "nationalparks"
    HAWKERS = "ssot_hawkercentres"


class Transaction(BaseModel):
    """A single HDB resale transaction."""

    model_config = ConfigDict(frozen=True)

    month: str = Field(pattern=r"^\d{4}-\d{2}$", description="YYYY-MM")
    town: str = Field(min_length=1)
    flat_type: str = Field(min_length=1)
    block: str = Field(min_length=1)
    street_name: str = Field(min_length=1)
    storey_range: str = Field(min_length=1)
    floor_area_sqm: float = Field(gt=0)
    flat_model: str | None = None
    lease_commence_date: int | None = None
    remaining_lease: str | None = None
    remaining_lease_years: int | None = Field(default=None, ge=0)
    resale_price: int = Field(gt=0)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    mrt_distance: int | None = None
    nearest_mrt: str | None = None

    @field_validator("town", "flat_type", "block", "street_name", "storey_range")
    @classmethod
    def normalize_text(cls, v: str) -> str:
        """Collapse whitespace and uppercase, matching the upstream dataset's casing."""
        return " ".join(v.upper().split())

    @model_validator(mode="after")
    def check_coordinates(self) -> Self:
        """Ensure both lat and lon are present or both are absent."""
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("Both latitude and longitude must be provided, or neither")
        return self

    @property
    def transaction_date(self) -> str:
        """First day of the transaction month (YYYY-MM-01)."""
        return f"{self.month}-01"

    @property
    def price_per_sqm(self) -> float:
        """Price per square metre, always derived from price and area."""
        return round(self.resale_price / self.floor_area_sqm, 2)

    @property
    def address(self) -> str:
        return f"{self.block} {self.street_name}"

    @property
    def natural_key(self) -> tuple[str, str, str, str, str, str, int]:
        """Composite identity; duplicates on this key are ignored on insert."""
        return (
            self.month,
            self.town,
            self.flat_type,
            self.block,
            self.street_name,
            self.storey_range,
            self.resale_price,
        )


class PriceStatistics(BaseModel):
    """Aggregate prices for one (town, flat_type, month) group."""

    model_config = ConfigDict(frozen=True)

    town: str
    flat_type: str
    month: str
    transaction_count: int = Field(ge=0)
    median_price: float
    avg_price: float
    min_price: int
    max_price: int
    avg_price_per_sqm: float | None = None
    price_change_pct: float | None = None


class Coordinates(BaseModel):
    """A WGS84 point."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class NearestTransit(BaseModel):
    """Closest MRT station to a point."""

    model_config = ConfigDict(frozen=True)

    name: str
    distance_meters: int = Field(ge=0)


class AmenityCounts(BaseModel):
    """Counts of amenities within ~500m of a unit."""

    model_config = ConfigDict(frozen=True)

    schools: int = Field(default=0, ge=0)
    malls: int = Field(default=0, ge=0)
    parks: int = Field(default=0, ge=0)
    hawkers: int = Field(default=0, ge=0)


class UnitFacts(BaseModel):
    """Everything the scoring engine needs to score one unit."""

    model_config = ConfigDict(frozen=True)

    resale_price: float = Field(ge=0)
    town_median: float
    mrt_distance: float = Field(ge=0)
    remaining_lease_years: float | None = None
    price_history: tuple[float | None, ...] = ()
    amenities: AmenityCounts = Field(default_factory=AmenityCounts)


class ScoreBreakdown(BaseModel):
    """Composite value score and its five components, all in [0, 100]."""

    model_config = ConfigDict(frozen=True)

    total: float = Field(ge=0, le=100)
    price: int = Field(ge=0, le=100)
    location: int = Field(ge=0, le=100)
    lease: int = Field(ge=0, le=100)
    appreciation: int = Field(ge=0, le=100)
    amenities: int = Field(ge=0, le=100)


class UnitScore(BaseModel):
    """Persisted score for a (block, street, town, flat_type) unit."""

    model_config = ConfigDict(frozen=True)

    block: str
    street_name: str
    town: str
    flat_type: str
    breakdown: ScoreBreakdown
    mrt_distance: int | None = None
    nearest_mrt: str | None = None
    nearby_schools: int = 0
    nearby_malls: int = 0
    nearby_parks: int = 0
    nearby_hawkers: int = 0
    calculated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def address(self) -> str:
        return f"{self.block} {self.street_name}"


class SyncState(BaseModel):
    """Current state of one sync kind."""

    kind: SyncKind
    status: SyncStatus
    last_sync_at: datetime | None = None
    started_at: datetime | None = None
    records_processed: int = 0
    error_message: str | None = None
