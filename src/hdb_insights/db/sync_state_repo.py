"""Sync state repository: claim, complete and read the per-kind sync_state rows."""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from datetime import UTC, datetime, timedelta
from typing import Any, Final

import aiosqlite

from hdb_insights.db.row_mappers import row_to_sync_state
from hdb_insights.logging import get_logger
from hdb_insights.models import SyncKind, SyncState, SyncStatus

# A run that has held the claim this long is presumed crashed
STALE_LEASE: Final = timedelta(minutes=15)

logger = get_logger(__name__)


class SyncStateRepository:
    """Database operations on the sync_state table."""

    def __init__(
        self,
        get_connection: Callable[[], Coroutine[Any, Any, aiosqlite.Connection]],
    ) -> None:
        self._get_connection = get_connection

    async def seed(self, conn: aiosqlite.Connection) -> None:
        """Insert one pending row per sync kind. Existing rows are left alone."""
        await conn.executemany(
            "INSERT OR IGNORE INTO sync_state (kind, status) VALUES (?, ?)",
            [(kind.value, SyncStatus.PENDING.value) for kind in SyncKind],
        )

    async def claim(
        self,
        kind: SyncKind,
        *,
        stale_after: timedelta = STALE_LEASE,
        now: datetime | None = None,
    ) -> bool:
        """Atomically move a sync kind to 'running'.

        The update only matches when the row is not running, or when the
        running claim started more than ``stale_after`` ago.

        Returns:
            True if this caller now holds the claim.
        """
        conn = await self._get_connection()
        now = now or datetime.now(UTC)
        cutoff = (now - stale_after).isoformat()
        cursor = await conn.execute(
            """
            UPDATE sync_state
            SET status = 'running', started_at = ?, error_message = NULL
            WHERE kind = ?
              AND (status != 'running' OR started_at IS NULL OR started_at < ?)
            """,
            (now.isoformat(), kind.value, cutoff),
        )
        await conn.commit()
        claimed = cursor.rowcount == 1
        if not claimed:
            logger.warning("sync_claim_rejected", kind=kind.value)
        return claimed

    async def complete(
        self,
        kind: SyncKind,
        status: SyncStatus,
        *,
        records_processed: int = 0,
        error_message: str | None = None,
    ) -> None:
        """Write a terminal status ('completed' or 'failed') for a sync kind."""
        conn = await self._get_connection()
        await conn.execute(
            """
            UPDATE sync_state
            SET status = ?, last_sync_at = ?, records_processed = ?, error_message = ?
            WHERE kind = ?
            """,
            (
                status.value,
                datetime.now(UTC).isoformat(),
                records_processed,
                error_message,
                kind.value,
            ),
        )
        await conn.commit()

    async def get(self, kind: SyncKind) -> SyncState | None:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM sync_state WHERE kind = ?", (kind.value,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return row_to_sync_state(row)
