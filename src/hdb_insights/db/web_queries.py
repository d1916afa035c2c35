"""Read-only market queries behind the cached web endpoints."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any, Final, cast

import aiosqlite

from hdb_insights.analysis.statistics import median, pct_change
from hdb_insights.db.row_mappers import ScoredUnitItem
from hdb_insights.logging import get_logger
from hdb_insights.utils.months import shift_month

if TYPE_CHECKING:
    from hdb_insights.web.filters import ComparisonFilter, ScoreFilter

logger = get_logger(__name__)

MOVING_AVERAGE_WINDOW: Final = 3


def build_comparison_clauses(
    town: str,
    flat_type: str,
    start_month: str,
    filters: ComparisonFilter,
) -> tuple[str, list[Any]]:
    """Build WHERE clause and params for the comparison query.

    Returns:
        Tuple of (where_sql, params).
    """
    where_clauses = ["town = ?", "flat_type = ?", "month >= ?"]
    params: list[Any] = [town, flat_type, start_month]

    if filters.storey is not None:
        where_clauses.append("storey_range = ?")
        params.append(filters.storey)
    if filters.min_area is not None:
        where_clauses.append("floor_area_sqm >= ?")
        params.append(filters.min_area)
    if filters.max_area is not None:
        where_clauses.append("floor_area_sqm <= ?")
        params.append(filters.max_area)
    if filters.min_lease is not None:
        where_clauses.append("remaining_lease_years >= ?")
        params.append(filters.min_lease)

    return " AND ".join(where_clauses), params


def moving_average(values: list[float], window: int = MOVING_AVERAGE_WINDOW) -> list[int | None]:
    """Trailing moving average, None until a full window is available."""
    result: list[int | None] = []
    for i in range(len(values)):
        if i < window - 1:
            result.append(None)
            continue
        result.append(round(sum(values[i - window + 1 : i + 1]) / window))
    return result


class WebQueryService:
    """Aggregate queries for the comparison, trends, scores and stats endpoints."""

    def __init__(
        self,
        get_connection: Callable[[], Coroutine[Any, Any, aiosqlite.Connection]],
    ) -> None:
        self._get_connection = get_connection

    async def _monthly_rows(
        self, where_sql: str, params: list[Any]
    ) -> dict[str, list[aiosqlite.Row]]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            f"""
            SELECT month, resale_price, price_per_sqm, remaining_lease_years
            FROM transactions
            WHERE {where_sql}
            ORDER BY month
            """,
            params,
        )
        by_month: dict[str, list[aiosqlite.Row]] = defaultdict(list)
        for row in await cursor.fetchall():
            by_month[row["month"]].append(row)
        return by_month

    async def get_comparison(
        self,
        town: str,
        flat_type: str,
        start_month: str,
        filters: ComparisonFilter,
    ) -> list[dict[str, Any]]:
        """Monthly price summary, newest month first.

        ``mom_pct`` compares against the previous calendar month and
        ``yoy_pct`` against the same month a year earlier, both rounded to
        one decimal and None when that month has no data in range.
        """
        where_sql, params = build_comparison_clauses(town, flat_type, start_month, filters)
        by_month = await self._monthly_rows(where_sql, params)

        medians: dict[str, float] = {}
        data: list[dict[str, Any]] = []
        for month, rows in by_month.items():
            prices = [r["resale_price"] for r in rows]
            medians[month] = median(prices)
            leases = [r["remaining_lease_years"] for r in rows if r["remaining_lease_years"]]
            data.append(
                {
                    "month": month,
                    "transaction_count": len(rows),
                    "avg_price": round(sum(prices) / len(prices)),
                    "median_price": medians[month],
                    "min_price": min(prices),
                    "max_price": max(prices),
                    "avg_price_psm": round(sum(r["price_per_sqm"] for r in rows) / len(rows), 2),
                    "avg_lease": round(sum(leases) / len(leases)) if leases else None,
                }
            )

        for item in data:
            month = item["month"]
            item["mom_pct"] = pct_change(
                medians[month], medians.get(shift_month(month, -1)), ndigits=1
            )
            item["yoy_pct"] = pct_change(
                medians[month], medians.get(shift_month(month, -12)), ndigits=1
            )

        data.sort(key=lambda item: item["month"], reverse=True)
        return data

    async def get_trends(self, town: str, flat_type: str, start_month: str) -> dict[str, Any]:
        """Monthly median series (oldest first) with a 3-month moving average and summary."""
        by_month = await self._monthly_rows(
            "town = ? AND flat_type = ? AND month >= ?", [town, flat_type, start_month]
        )

        data: list[dict[str, Any]] = []
        previous: float | None = None
        for month in sorted(by_month):
            prices = [r["resale_price"] for r in by_month[month]]
            month_median = median(prices)
            data.append(
                {
                    "month": month,
                    "median_price": month_median,
                    "avg_price": round(sum(prices) / len(prices)),
                    "transaction_count": len(prices),
                    "price_change_pct": pct_change(month_median, previous, ndigits=1),
                }
            )
            previous = month_median

        averages = moving_average([item["median_price"] for item in data])
        for item, avg in zip(data, averages, strict=True):
            item["moving_average"] = avg

        latest = data[-1]["median_price"] if data else 0
        earliest = data[0]["median_price"] if data else 0
        summary = {
            "latest_median": latest,
            "earliest_median": earliest,
            "total_change_pct": pct_change(latest, earliest, ndigits=1) or 0,
            "avg_monthly_transactions": (
                round(sum(item["transaction_count"] for item in data) / len(data)) if data else 0
            ),
        }
        return {"data": data, "summary": summary}

    async def get_top_scores(self, filters: ScoreFilter) -> list[ScoredUnitItem]:
        """Highest-scoring units with their latest transaction, best first."""
        where_clauses = ["us.total_score >= ?"]
        params: list[Any] = [filters.min_score]

        if filters.towns:
            where_clauses.append(f"us.town IN ({', '.join('?' for _ in filters.towns)})")
            params.extend(filters.towns)
        if filters.flat_types:
            where_clauses.append(
                f"us.flat_type IN ({', '.join('?' for _ in filters.flat_types)})"
            )
            params.extend(filters.flat_types)
        if filters.budget_min is not None:
            where_clauses.append("lt.resale_price >= ?")
            params.append(filters.budget_min)
        if filters.budget_max is not None:
            where_clauses.append("lt.resale_price <= ?")
            params.append(filters.budget_max)

        params.append(filters.limit)
        conn = await self._get_connection()
        cursor = await conn.execute(
            f"""
            SELECT us.block, us.street_name, us.town, us.flat_type,
                   us.total_score, us.price_score, us.location_score, us.lease_score,
                   us.appreciation_score, us.amenities_score,
                   us.mrt_distance, us.nearest_mrt,
                   us.nearby_schools, us.nearby_malls, us.nearby_parks, us.nearby_hawkers,
                   us.calculated_at,
                   lt.resale_price, lt.floor_area_sqm, lt.remaining_lease,
                   lt.remaining_lease_years, lt.storey_range, lt.month AS latest_month
            FROM unit_scores us
            LEFT JOIN (
                SELECT block, street_name, town, flat_type, resale_price, floor_area_sqm,
                       remaining_lease, remaining_lease_years, storey_range, month,
                       ROW_NUMBER() OVER (
                           PARTITION BY block, street_name, town, flat_type
                           ORDER BY transaction_date DESC, id DESC
                       ) AS rn
                FROM transactions
            ) lt ON lt.block = us.block
                AND lt.street_name = us.street_name
                AND lt.town = us.town
                AND lt.flat_type = us.flat_type
                AND lt.rn = 1
            WHERE {" AND ".join(where_clauses)}
            ORDER BY us.total_score DESC, us.block, us.street_name
            LIMIT ?
            """,
            params,
        )
        rows = await cursor.fetchall()
        return [cast(ScoredUnitItem, dict(row)) for row in rows]

    async def get_market_overview(self) -> dict[str, Any]:
        """Store-wide counts plus the latest month's per-group statistics."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT COUNT(*) AS total_transactions,
                   MAX(month) AS latest_month,
                   COUNT(DISTINCT town) AS town_count
            FROM transactions
            """
        )
        totals = await cursor.fetchone()

        cursor = await conn.execute("SELECT COUNT(*) FROM unit_scores")
        scored = await cursor.fetchone()

        cursor = await conn.execute(
            """
            SELECT town, flat_type, month, transaction_count, median_price,
                   avg_price_per_sqm, price_change_pct
            FROM price_statistics
            WHERE month = (SELECT MAX(month) FROM price_statistics)
            ORDER BY town, flat_type
            """
        )
        latest_statistics = [dict(row) for row in await cursor.fetchall()]

        return {
            "total_transactions": totals["total_transactions"] if totals else 0,
            "latest_month": totals["latest_month"] if totals else None,
            "town_count": totals["town_count"] if totals else 0,
            "scored_units": scored[0] if scored else 0,
            "latest_statistics": latest_statistics,
        }
