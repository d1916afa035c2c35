"""Cache policy: TTL classes, versioned keys and the read-through helper."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Final, Literal, Protocol

import aiosqlite

from hdb_insights.logging import get_logger

logger = get_logger(__name__)

# Bump to orphan every versioned key at once
CACHE_VERSION: Final = "v1"


class CacheTTL:
    """Time-to-live per cache class, in seconds. None never expires."""

    COMPARISON: Final[int] = 3600
    TRENDS: Final[int] = 3600
    SCORES: Final[int] = 86400
    STATS: Final[int] = 86400
    GEOCODE: Final[None] = None


class KeyValueCache(Protocol):
    """Minimal async key-value store the cache policy runs on."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...


def comparison_key(town: str, flat_type: str, range_code: str, filters: str = "") -> str:
    return f"{CACHE_VERSION}:comparison:{town}:{flat_type}:{range_code}:{filters}"


def trends_key(town: str, flat_type: str, range_code: str) -> str:
    return f"{CACHE_VERSION}:trends:{town}:{flat_type}:{range_code}"


def scores_key(filters: str) -> str:
    return f"{CACHE_VERSION}:scores:{filters}"


def stats_key() -> str:
    return f"{CACHE_VERSION}:stats"


def geocode_key(block: str, street_name: str) -> str:
    """Geocode keys carry no version: addresses do not move."""
    return f"geocode:{block}:{street_name}"


@dataclass(frozen=True)
class CachedResponse:
    """A payload plus where it came from and when it was computed."""

    data: Any
    cached_at: str
    source: Literal["cache", "fresh"]

    def to_dict(self) -> dict[str, Any]:
        return {"data": self.data, "cached_at": self.cached_at, "source": self.source}


async def read_through(
    cache: KeyValueCache,
    key: str,
    ttl: int | None,
    loader: Callable[[], Awaitable[Any]],
) -> CachedResponse:
    """Serve ``key`` from the cache, or compute it with ``loader`` and store it.

    A failed or corrupt cache read is treated as a miss. A failed cache
    write is logged and the fresh value is still returned. Loader errors
    propagate.
    """
    try:
        entry = await cache.get(key)
    except (aiosqlite.Error, ValueError):
        logger.warning("cache_read_failed", key=key, exc_info=True)
        entry = None

    if isinstance(entry, dict) and "data" in entry and "cached_at" in entry:
        return CachedResponse(data=entry["data"], cached_at=entry["cached_at"], source="cache")

    data = await loader()
    cached_at = datetime.now(UTC).isoformat()
    try:
        await cache.set(key, {"data": data, "cached_at": cached_at}, ttl_seconds=ttl)
    except (aiosqlite.Error, TypeError, ValueError):
        logger.warning("cache_write_failed", key=key, exc_info=True)
    return CachedResponse(data=data, cached_at=cached_at, source="fresh")
