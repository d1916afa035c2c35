"""SQLite storage for resale transactions, statistics, unit scores and sync state."""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import aiosqlite

from hdb_insights.db.cache_store import SqliteCache
from hdb_insights.db.row_mappers import (
    TRANSACTION_COLUMNS,
    ScoredUnitItem,
    row_to_statistics,
    row_to_transaction,
    row_to_unit_score,
    transaction_values,
)
from hdb_insights.db.sync_state_repo import STALE_LEASE, SyncStateRepository
from hdb_insights.db.web_queries import WebQueryService
from hdb_insights.logging import get_logger
from hdb_insights.models import (
    Coordinates,
    NearestTransit,
    PriceStatistics,
    SyncKind,
    SyncState,
    SyncStatus,
    Transaction,
    UnitScore,
)
from hdb_insights.utils.months import shift_month

if TYPE_CHECKING:
    from hdb_insights.web.filters import ComparisonFilter, ScoreFilter

# Statements per commit for batch writes
BATCH_SIZE: Final = 50

logger = get_logger(__name__)


def _chunks(items: Sequence[Any], size: int = BATCH_SIZE) -> list[Sequence[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class MarketStorage:
    """SQLite-based storage for the resale market."""

    def __init__(self, db_path: str, *, clock: Callable[[], float] = time.time) -> None:
        """Initialize storage with database path.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory.
            clock: Time source for cache expiry, in epoch seconds.
        """
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._ensure_directory()
        self._web = WebQueryService(self._get_connection)
        self._sync_state = SyncStateRepository(self._get_connection)
        self.cache = SqliteCache(self._get_connection, clock=clock)

    def _ensure_directory(self) -> None:
        """Ensure the directory for the database exists."""
        if self.db_path != ":memory:":
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA busy_timeout=5000")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute("PRAGMA cache_size=-64000")
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def initialize(self) -> None:
        """Initialize the database schema and seed the sync_state rows."""
        conn = await self._get_connection()
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                month TEXT NOT NULL,
                transaction_date TEXT NOT NULL,
                town TEXT NOT NULL,
                flat_type TEXT NOT NULL,
                block TEXT NOT NULL,
                street_name TEXT NOT NULL,
                storey_range TEXT NOT NULL,
                floor_area_sqm REAL NOT NULL,
                flat_model TEXT,
                lease_commence_date INTEGER,
                remaining_lease TEXT,
                remaining_lease_years INTEGER,
                resale_price INTEGER NOT NULL,
                price_per_sqm REAL NOT NULL,
                latitude REAL,
                longitude REAL,
                mrt_distance INTEGER,
                nearest_mrt TEXT,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(month, town, flat_type, block, street_name, storey_range, resale_price)
            )
        """)
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_txn_town_flat ON transactions(town, flat_type)"
        )
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_txn_month ON transactions(month)")
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_txn_address ON transactions(block, street_name)"
        )

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS price_statistics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                town TEXT NOT NULL,
                flat_type TEXT NOT NULL,
                month TEXT NOT NULL,
                transaction_count INTEGER NOT NULL,
                median_price REAL NOT NULL,
                avg_price REAL NOT NULL,
                min_price INTEGER NOT NULL,
                max_price INTEGER NOT NULL,
                avg_price_per_sqm REAL,
                price_change_pct REAL,
                updated_at TEXT NOT NULL,
                UNIQUE(town, flat_type, month)
            )
        """)
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_stats_month ON price_statistics(month)"
        )

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS unit_scores (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                block TEXT NOT NULL,
                street_name TEXT NOT NULL,
                town TEXT NOT NULL,
                flat_type TEXT NOT NULL,
                total_score REAL NOT NULL,
                price_score INTEGER NOT NULL,
                location_score INTEGER NOT NULL,
                lease_score INTEGER NOT NULL,
                appreciation_score INTEGER NOT NULL,
                amenities_score INTEGER NOT NULL,
                mrt_distance INTEGER,
                nearest_mrt TEXT,
                nearby_schools INTEGER NOT NULL DEFAULT 0,
                nearby_malls INTEGER NOT NULL DEFAULT 0,
                nearby_parks INTEGER NOT NULL DEFAULT 0,
                nearby_hawkers INTEGER NOT NULL DEFAULT 0,
                calculated_at TEXT NOT NULL,
                UNIQUE(block, street_name, town, flat_type)
            )
        """)
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_scores_total ON unit_scores(total_score DESC)"
        )

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_state (
                kind TEXT PRIMARY KEY,
                status TEXT NOT NULL DEFAULT 'pending',
                last_sync_at TEXT,
                started_at TEXT,
                records_processed INTEGER NOT NULL DEFAULT 0,
                error_message TEXT
            )
        """)
        await self._sync_state.seed(conn)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS enrichment_skips (
                block TEXT NOT NULL,
                street_name TEXT NOT NULL,
                reason TEXT NOT NULL,
                skipped_at TEXT NOT NULL,
                PRIMARY KEY (block, street_name)
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL
            )
        """)

        await conn.commit()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def upsert_transactions(self, records: Sequence[Transaction]) -> int:
        """Insert transactions, ignoring duplicates on the natural key.

        Writes are committed every BATCH_SIZE rows. If a chunk fails it is
        rolled back and the error propagates; earlier chunks stay committed.

        Returns:
            Number of rows actually inserted.
        """
        if not records:
            return 0
        conn = await self._get_connection()
        col_list = ", ".join(TRANSACTION_COLUMNS)
        placeholders = ", ".join("?" for _ in TRANSACTION_COLUMNS)
        sql = f"INSERT OR IGNORE INTO transactions ({col_list}) VALUES ({placeholders})"

        inserted = 0
        for index, chunk in enumerate(_chunks(records)):
            before = conn.total_changes
            try:
                await conn.executemany(sql, [transaction_values(t) for t in chunk])
                await conn.commit()
            except aiosqlite.Error:
                await conn.rollback()
                logger.error(
                    "transaction_chunk_failed",
                    chunk=index,
                    size=len(chunk),
                    inserted_so_far=inserted,
                    exc_info=True,
                )
                raise
            chunk_inserted = conn.total_changes - before
            inserted += chunk_inserted
            if chunk_inserted:
                logger.debug("transaction_chunk_inserted", chunk=index, inserted=chunk_inserted)

        logger.info("transactions_upserted", received=len(records), inserted=inserted)
        return inserted

    async def get_latest_month(self) -> str | None:
        """Newest ``month`` across stored transactions, or None if empty."""
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT MAX(month) FROM transactions")
        row = await cursor.fetchone()
        return row[0] if row else None

    async def get_transaction_count(self) -> int:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT COUNT(*) FROM transactions")
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def get_transactions_between(self, start_month: str, end_month: str) -> list[Transaction]:
        """Transactions with ``start_month <= month <= end_month``, oldest first."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT * FROM transactions
            WHERE month >= ? AND month <= ?
            ORDER BY month, id
            """,
            (start_month, end_month),
        )
        rows = await cursor.fetchall()
        return [row_to_transaction(row) for row in rows]

    async def backfill_coordinates(
        self,
        block: str,
        street_name: str,
        coords: Coordinates,
        transit: NearestTransit | None = None,
    ) -> int:
        """Write coordinates (and transit, when known) onto every txn at an address.

        Returns:
            Number of rows updated.
        """
        conn = await self._get_connection()
        if transit is None:
            cursor = await conn.execute(
                """
                UPDATE transactions SET latitude = ?, longitude = ?
                WHERE block = ? AND street_name = ?
                """,
                (coords.latitude, coords.longitude, block, street_name),
            )
        else:
            cursor = await conn.execute(
                """
                UPDATE transactions
                SET latitude = ?, longitude = ?, mrt_distance = ?, nearest_mrt = ?
                WHERE block = ? AND street_name = ?
                """,
                (
                    coords.latitude,
                    coords.longitude,
                    transit.distance_meters,
                    transit.name,
                    block,
                    street_name,
                ),
            )
        await conn.commit()
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def replace_statistics(self, rows: Sequence[PriceStatistics]) -> None:
        """Upsert statistics rows wholesale, keyed by (town, flat_type, month)."""
        if not rows:
            return
        conn = await self._get_connection()
        now = datetime.now(UTC).isoformat()
        for chunk in _chunks(rows):
            await conn.executemany(
                """
                INSERT INTO price_statistics (
                    town, flat_type, month, transaction_count, median_price, avg_price,
                    min_price, max_price, avg_price_per_sqm, price_change_pct, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(town, flat_type, month) DO UPDATE SET
                    transaction_count = excluded.transaction_count,
                    median_price = excluded.median_price,
                    avg_price = excluded.avg_price,
                    min_price = excluded.min_price,
                    max_price = excluded.max_price,
                    avg_price_per_sqm = excluded.avg_price_per_sqm,
                    price_change_pct = excluded.price_change_pct,
                    updated_at = excluded.updated_at
                """,
                [
                    (
                        s.town,
                        s.flat_type,
                        s.month,
                        s.transaction_count,
                        s.median_price,
                        s.avg_price,
                        s.min_price,
                        s.max_price,
                        s.avg_price_per_sqm,
                        s.price_change_pct,
                        now,
                    )
                    for s in chunk
                ],
            )
            await conn.commit()

    async def get_statistics(
        self, town: str, flat_type: str, month: str
    ) -> PriceStatistics | None:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM price_statistics WHERE town = ? AND flat_type = ? AND month = ?",
            (town, flat_type, month),
        )
        row = await cursor.fetchone()
        return row_to_statistics(row) if row else None

    async def get_town_medians(self) -> dict[tuple[str, str], float]:
        """Median price per (town, flat_type) from the latest statistics month."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT town, flat_type, median_price FROM price_statistics
            WHERE month = (SELECT MAX(month) FROM price_statistics)
            """
        )
        rows = await cursor.fetchall()
        return {(row["town"], row["flat_type"]): row["median_price"] for row in rows}

    async def get_price_history(
        self, town: str, flat_type: str, months: int = 12
    ) -> list[float | None]:
        """Monthly group medians over ``months`` calendar months, oldest first.

        The series ends at the group's newest statistics month. Months
        without statistics are None so callers keep the real spacing.
        """
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT MAX(month) FROM price_statistics WHERE town = ? AND flat_type = ?",
            (town, flat_type),
        )
        row = await cursor.fetchone()
        latest = row[0] if row else None
        if latest is None or months <= 0:
            return []

        first = shift_month(latest, -(months - 1))
        cursor = await conn.execute(
            """
            SELECT month, median_price FROM price_statistics
            WHERE town = ? AND flat_type = ? AND month >= ? AND month <= ?
            """,
            (town, flat_type, first, latest),
        )
        by_month = {r["month"]: r["median_price"] for r in await cursor.fetchall()}
        return [by_month.get(shift_month(first, i)) for i in range(months)]

    # ------------------------------------------------------------------
    # Unit scores and enrichment backlog
    # ------------------------------------------------------------------

    async def upsert_score(self, score: UnitScore) -> None:
        """Insert or overwrite the score row for a (block, street, town, flat_type) unit."""
        conn = await self._get_connection()
        b = score.breakdown
        await conn.execute(
            """
            INSERT INTO unit_scores (
                block, street_name, town, flat_type,
                total_score, price_score, location_score, lease_score,
                appreciation_score, amenities_score,
                mrt_distance, nearest_mrt,
                nearby_schools, nearby_malls, nearby_parks, nearby_hawkers,
                calculated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(block, street_name, town, flat_type) DO UPDATE SET
                total_score = excluded.total_score,
                price_score = excluded.price_score,
                location_score = excluded.location_score,
                lease_score = excluded.lease_score,
                appreciation_score = excluded.appreciation_score,
                amenities_score = excluded.amenities_score,
                mrt_distance = excluded.mrt_distance,
                nearest_mrt = excluded.nearest_mrt,
                nearby_schools = excluded.nearby_schools,
                nearby_malls = excluded.nearby_malls,
                nearby_parks = excluded.nearby_parks,
                nearby_hawkers = excluded.nearby_hawkers,
                calculated_at = excluded.calculated_at
            """,
            (
                score.block,
                score.street_name,
                score.town,
                score.flat_type,
                b.total,
                b.price,
                b.location,
                b.lease,
                b.appreciation,
                b.amenities,
                score.mrt_distance,
                score.nearest_mrt,
                score.nearby_schools,
                score.nearby_malls,
                score.nearby_parks,
                score.nearby_hawkers,
                score.calculated_at.isoformat(),
            ),
        )
        await conn.execute(
            "DELETE FROM enrichment_skips WHERE block = ? AND street_name = ?",
            (score.block, score.street_name),
        )
        await conn.commit()

    async def get_score(
        self, block: str, street_name: str, town: str, flat_type: str
    ) -> UnitScore | None:
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT * FROM unit_scores
            WHERE block = ? AND street_name = ? AND town = ? AND flat_type = ?
            """,
            (block, street_name, town, flat_type),
        )
        row = await cursor.fetchone()
        return row_to_unit_score(row) if row else None

    async def select_enrichment_backlog(
        self,
        limit: int,
        *,
        stale_days: int = 30,
        now: datetime | None = None,
    ) -> list[Transaction]:
        """Units needing a (re)score: no score row, or one older than ``stale_days``.

        One representative per (block, street_name) is returned: the
        transaction with the latest date. Addresses with a recorded skip
        come last, oldest skip first, so they cannot starve the rest.
        """
        if limit <= 0:
            return []
        cutoff = ((now or datetime.now(UTC)) - timedelta(days=stale_days)).isoformat()
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT t.* FROM (
                SELECT *, ROW_NUMBER() OVER (
                    PARTITION BY block, street_name
                    ORDER BY transaction_date DESC, id DESC
                ) AS rn
                FROM transactions
            ) t
            LEFT JOIN unit_scores s
                ON s.block = t.block
                AND s.street_name = t.street_name
                AND s.town = t.town
                AND s.flat_type = t.flat_type
            LEFT JOIN enrichment_skips k
                ON k.block = t.block AND k.street_name = t.street_name
            WHERE t.rn = 1
              AND (s.id IS NULL OR s.calculated_at < ?)
            ORDER BY k.skipped_at IS NOT NULL, k.skipped_at,
                     t.transaction_date DESC, t.block, t.street_name
            LIMIT ?
            """,
            (cutoff, limit),
        )
        rows = await cursor.fetchall()
        return [row_to_transaction(row) for row in rows]

    async def record_enrichment_skip(
        self, block: str, street_name: str, reason: str, *, now: datetime | None = None
    ) -> None:
        """Remember an address that could not be enriched; it moves to the back of the backlog."""
        conn = await self._get_connection()
        await conn.execute(
            """
            INSERT INTO enrichment_skips (block, street_name, reason, skipped_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(block, street_name) DO UPDATE SET
                reason = excluded.reason,
                skipped_at = excluded.skipped_at
            """,
            (block, street_name, reason, (now or datetime.now(UTC)).isoformat()),
        )
        await conn.commit()

    # ------------------------------------------------------------------
    # Facade: sync state (delegates to SyncStateRepository)
    # ------------------------------------------------------------------

    async def claim_sync(
        self,
        kind: SyncKind,
        *,
        stale_after: timedelta = STALE_LEASE,
        now: datetime | None = None,
    ) -> bool:
        """Atomically claim a sync kind. Returns False if another run holds it."""
        return await self._sync_state.claim(kind, stale_after=stale_after, now=now)

    async def complete_sync(
        self,
        kind: SyncKind,
        status: SyncStatus,
        *,
        records_processed: int = 0,
        error_message: str | None = None,
    ) -> None:
        """Write a terminal status for a sync kind."""
        await self._sync_state.complete(
            kind, status, records_processed=records_processed, error_message=error_message
        )

    async def get_sync_state(self, kind: SyncKind) -> SyncState | None:
        """Get the current state row for a sync kind."""
        return await self._sync_state.get(kind)

    # ------------------------------------------------------------------
    # Facade: web queries (delegates to WebQueryService)
    # ------------------------------------------------------------------

    async def get_comparison(
        self, town: str, flat_type: str, start_month: str, filters: ComparisonFilter
    ) -> list[dict[str, Any]]:
        """Monthly comparison rows, newest first."""
        return await self._web.get_comparison(town, flat_type, start_month, filters)

    async def get_trends(self, town: str, flat_type: str, start_month: str) -> dict[str, Any]:
        """Monthly trend series and summary."""
        return await self._web.get_trends(town, flat_type, start_month)

    async def get_top_scores(self, filters: ScoreFilter) -> list[ScoredUnitItem]:
        """Best-scoring units matching the filters."""
        return await self._web.get_top_scores(filters)

    async def get_market_overview(self) -> dict[str, Any]:
        """Store-wide market overview."""
        return await self._web.get_market_overview()
