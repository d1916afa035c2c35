"""Per-(town, flat type, month) price aggregates."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

from hdb_insights.logging import get_logger
from hdb_insights.models import PriceStatistics, Transaction
from hdb_insights.utils.months import shift_month

if TYPE_CHECKING:
    from hdb_insights.db import MarketStorage

logger = get_logger(__name__)

GroupKey = tuple[str, str, str]


def median(values: Sequence[float]) -> float:
    """Rank-based median: the middle value, or the mean of the two central values.

    Raises:
        ValueError: If ``values`` is empty.
    """
    if not values:
        raise ValueError("median of empty sequence")
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return float(ordered[mid])
    return (ordered[mid - 1] + ordered[mid]) / 2


def pct_change(current: float, previous: float | None, *, ndigits: int = 2) -> float | None:
    """Percent change from ``previous`` to ``current``; None without a usable base."""
    if previous is None or previous == 0:
        return None
    return round((current - previous) / previous * 100, ndigits)


def aggregate(
    transactions: Iterable[Transaction],
    *,
    first_month: str | None = None,
) -> list[PriceStatistics]:
    """Aggregate transactions into one PriceStatistics row per group.

    Groups before ``first_month`` are used only as the prior-month baseline
    for ``price_change_pct`` and are not returned.
    """
    groups: dict[GroupKey, list[Transaction]] = defaultdict(list)
    for txn in transactions:
        groups[(txn.town, txn.flat_type, txn.month)].append(txn)

    medians = {key: median([t.resale_price for t in rows]) for key, rows in groups.items()}

    results: list[PriceStatistics] = []
    for key in sorted(groups):
        town, flat_type, month = key
        if first_month is not None and month < first_month:
            continue
        rows = groups[key]
        prices = [t.resale_price for t in rows]
        previous = medians.get((town, flat_type, shift_month(month, -1)))
        results.append(
            PriceStatistics(
                town=town,
                flat_type=flat_type,
                month=month,
                transaction_count=len(rows),
                median_price=medians[key],
                avg_price=round(sum(prices) / len(prices), 2),
                min_price=min(prices),
                max_price=max(prices),
                avg_price_per_sqm=round(sum(t.price_per_sqm for t in rows) / len(rows), 2),
                price_change_pct=pct_change(medians[key], previous),
            )
        )
    return results


class StatisticsAggregator:
    """Recomputes the price_statistics rows for a trailing window of months."""

    def __init__(self, storage: MarketStorage) -> None:
        self._storage = storage

    async def recompute(self, window_months: int) -> list[PriceStatistics]:
        """Replace statistics for the window ending at the newest stored month.

        The window is inclusive at both ends: the newest month and the
        ``window_months`` months before it, so 6 covers seven calendar
        months. The month before the window is loaded as a baseline so the
        first written month still gets a month-over-month change.
        """
        latest = await self._storage.get_latest_month()
        if latest is None:
            logger.info("statistics_skipped_empty_store")
            return []

        first_month = shift_month(latest, -window_months)
        baseline_month = shift_month(first_month, -1)
        transactions = await self._storage.get_transactions_between(baseline_month, latest)

        rows = aggregate(transactions, first_month=first_month)
        await self._storage.replace_statistics(rows)
        logger.info(
            "statistics_recomputed",
            first_month=first_month,
            last_month=latest,
            groups=len(rows),
        )
        return rows
