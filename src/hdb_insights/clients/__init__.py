"""Clients for the resale price feed and the OneMap enrichment API."""

from hdb_insights.clients.http import RateLimitedClient
from hdb_insights.clients.onemap import AccessToken, OneMapClient
from hdb_insights.clients.resale_feed import FeedPage, ResaleFeedClient, normalize_record

__all__ = [
    "AccessToken",
    "FeedPage",
    "OneMapClient",
    "RateLimitedClient",
    "ResaleFeedClient",
    "normalize_record",
]
