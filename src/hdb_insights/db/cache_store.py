"""Key-value cache backed by the cache_entries table."""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Coroutine
from typing import Any

import aiosqlite

from hdb_insights.logging import get_logger

logger = get_logger(__name__)


class SqliteCache:
    """JSON values keyed by string, with an optional per-entry TTL.

    Expired entries read as misses and are removed lazily on the next read.
    """

    def __init__(
        self,
        get_connection: Callable[[], Coroutine[Any, Any, aiosqlite.Connection]],
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._get_connection = get_connection
        self._clock = clock

    async def get(self, key: str) -> Any | None:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT value, expires_at FROM cache_entries WHERE key = ?", (key,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        if row["expires_at"] is not None and row["expires_at"] <= self._clock():
            await self.delete(key)
            return None
        return json.loads(row["value"])

    async def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        """Store a JSON-serializable value. ``ttl_seconds=None`` never expires."""
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        conn = await self._get_connection()
        await conn.execute(
            """
            INSERT INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                expires_at = excluded.expires_at
            """,
            (key, json.dumps(value), expires_at),
        )
        await conn.commit()

    async def delete(self, key: str) -> None:
        conn = await self._get_connection()
        await conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        await conn.commit()
