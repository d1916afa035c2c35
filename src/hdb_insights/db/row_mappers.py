"""Row-to-model mappers and INSERT column builders shared by storage and queries."""

from __future__ import annotations

from datetime import datetime
from typing import Any, TypedDict

import aiosqlite

from hdb_insights.models import (
    PriceStatistics,
    ScoreBreakdown,
    SyncKind,
    SyncState,
    SyncStatus,
    Transaction,
    UnitScore,
)

TRANSACTION_COLUMNS: tuple[str, ...] = (
    "month",
    "transaction_date",
    "town",
    "flat_type",
    "block",
    "street_name",
    "storey_range",
    "floor_area_sqm",
    "flat_model",
    "lease_commence_date",
    "remaining_lease",
    "remaining_lease_years",
    "resale_price",
    "price_per_sqm",
    "latitude",
    "longitude",
    "mrt_distance",
    "nearest_mrt",
)


class ScoredUnitItem(TypedDict):
    """Score-ranking row joined with the unit's latest transaction."""

    block: str
    street_name: str
    town: str
    flat_type: str
    total_score: float
    price_score: int
    location_score: int
    lease_score: int
    appreciation_score: int
    amenities_score: int
    mrt_distance: int | None
    nearest_mrt: str | None
    nearby_schools: int
    nearby_malls: int
    nearby_parks: int
    nearby_hawkers: int
    resale_price: int | None
    floor_area_sqm: float | None
    remaining_lease: str | None
    remaining_lease_years: int | None
    storey_range: str | None
    latest_month: str | None
    calculated_at: str


def transaction_values(txn: Transaction) -> tuple[Any, ...]:
    """Values for TRANSACTION_COLUMNS, in order. Derived fields come from the model."""
    return (
        txn.month,
        txn.transaction_date,
        txn.town,
        txn.flat_type,
        txn.block,
        txn.street_name,
        txn.storey_range,
        txn.floor_area_sqm,
        txn.flat_model,
        txn.lease_commence_date,
        txn.remaining_lease,
        txn.remaining_lease_years,
        txn.resale_price,
        txn.price_per_sqm,
        txn.latitude,
        txn.longitude,
        txn.mrt_distance,
        txn.nearest_mrt,
    )


def row_to_transaction(row: aiosqlite.Row) -> Transaction:
    return Transaction(
        month=row["month"],
        town=row["town"],
        flat_type=row["flat_type"],
        block=row["block"],
        street_name=row["street_name"],
        storey_range=row["storey_range"],
        floor_area_sqm=row["floor_area_sqm"],
        flat_model=row["flat_model"],
        lease_commence_date=row["lease_commence_date"],
        remaining_lease=row["remaining_lease"],
        remaining_lease_years=row["remaining_lease_years"],
        resale_price=row["resale_price"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        mrt_distance=row["mrt_distance"],
        nearest_mrt=row["nearest_mrt"],
    )


def row_to_statistics(row: aiosqlite.Row) -> PriceStatistics:
    return PriceStatistics(
        town=row["town"],
        flat_type=row["flat_type"],
        month=row["month"],
        transaction_count=row["transaction_count"],
        median_price=row["median_price"],
        avg_price=row["avg_price"],
        min_price=row["min_price"],
        max_price=row["max_price"],
        avg_price_per_sqm=row["avg_price_per_sqm"],
        price_change_pct=row["price_change_pct"],
    )


def row_to_unit_score(row: aiosqlite.Row) -> UnitScore:
    return UnitScore(
        block=row["block"],
        street_name=row["street_name"],
        town=row["town"],
        flat_type=row["flat_type"],
        breakdown=ScoreBreakdown(
            total=row["total_score"],
            price=row["price_score"],
            location=row["location_score"],
            lease=row["lease_score"],
            appreciation=row["appreciation_score"],
            amenities=row["amenities_score"],
        ),
        mrt_distance=row["mrt_distance"],
        nearest_mrt=row["nearest_mrt"],
        nearby_schools=row["nearby_schools"],
        nearby_malls=row["nearby_malls"],
        nearby_parks=row["nearby_parks"],
        nearby_hawkers=row["nearby_hawkers"],
        calculated_at=datetime.fromisoformat(row["calculated_at"]),
    )


def row_to_sync_state(row: aiosqlite.Row) -> SyncState:
    return SyncState(
        kind=SyncKind(row["kind"]),
        status=SyncStatus(row["status"]),
        last_sync_at=(
            datetime.fromisoformat(row["last_sync_at"]) if row["last_sync_at"] else None
        ),
        started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
        records_processed=row["records_processed"] or 0,
        error_message=row["error_message"],
    )
