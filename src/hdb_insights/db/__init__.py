"""Database storage for resale transactions, statistics and scores."""

from hdb_insights.db.cache_store import SqliteCache
from hdb_insights.db.row_mappers import ScoredUnitItem
from hdb_insights.db.storage import MarketStorage

__all__ = ["MarketStorage", "ScoredUnitItem", "SqliteCache"]
