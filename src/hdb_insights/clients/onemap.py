"""OneMap client: geocoding, nearest MRT station and amenity counts.

Search is public. Reverse geocoding and the theme service need an access
token, which is fetched lazily with the account credentials and refreshed
once it expires.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Final

from pydantic import SecretStr

from hdb_insights.cache import CacheTTL, KeyValueCache, geocode_key
from hdb_insights.clients.http import RateLimitedClient
from hdb_insights.errors import (
    EnrichmentAuthError,
    RateLimitedError,
    UpstreamError,
    primary_error,
)
from hdb_insights.logging import get_logger
from hdb_insights.models import AmenityCounts, AmenityTheme, Coordinates, NearestTransit
from hdb_insights.utils.geo import bounding_box_extents, haversine_meters
from hdb_insights.utils.parsing import parse_float

logger = get_logger(__name__)

DEFAULT_BASE_URL: Final = "https://www.onemap.gov.sg"
TOKEN_LIFETIME: Final = timedelta(days=3)
TRANSIT_BUFFER_METERS: Final = 500
AMENITY_CONCURRENCY: Final = 4

_TRANSIT_MARKERS: Final = ("MRT", "STATION")
_TRANSIT_EXCLUDES: Final = ("TRACK", "POWER")


@dataclass(frozen=True)
class AccessToken:
    """A OneMap bearer token and the moment it stops being valid."""

    value: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


def _is_transit_name(name: str) -> bool:
    upper = name.upper()
    return any(m in upper for m in _TRANSIT_MARKERS) and not any(
        x in upper for x in _TRANSIT_EXCLUDES
    )


class OneMapClient:
    """Enrichment lookups against the OneMap API."""

    def __init__(
        self,
        http: RateLimitedClient,
        *,
        email: str,
        password: SecretStr,
        cache: KeyValueCache,
        base_url: str = DEFAULT_BASE_URL,
        amenity_concurrency: int = AMENITY_CONCURRENCY,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._http = http
        self._email = email
        self._password = password
        self._cache = cache
        self._base_url = base_url.rstrip("/")
        self._clock = clock
        self._token: AccessToken | None = None
        self._token_lock = asyncio.Lock()
        self._amenity_semaphore = asyncio.Semaphore(amenity_concurrency)

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def get_token(self) -> AccessToken:
        """Return a valid token, fetching a new one if none is held or it expired.

        Raises:
            RateLimitedError: If the token endpoint answers 429.
            EnrichmentAuthError: If the token endpoint fails or omits the token.
        """
        async with self._token_lock:
            now = self._clock()
            if self._token is not None and not self._token.is_expired(now):
                return self._token

            try:
                response = await self._http.post(
                    f"{self._base_url}/api/auth/post/getToken",
                    json={
                        "email": self._email,
                        "password": self._password.get_secret_value(),
                    },
                )
                body = response.json()
            except RateLimitedError:
                raise
            except (UpstreamError, ValueError) as e:
                raise EnrichmentAuthError(f"OneMap token request failed: {e}") from e

            value = body.get("access_token") if isinstance(body, dict) else None
            if not value:
                raise EnrichmentAuthError("OneMap token response had no access_token")

            self._token = AccessToken(value=value, expires_at=now + TOKEN_LIFETIME)
            logger.info("onemap_token_acquired", expires_at=self._token.expires_at.isoformat())
            return self._token

    async def _auth_headers(self) -> dict[str, str]:
        token = await self.get_token()
        return {"Authorization": token.value}

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def geocode(self, block: str, street_name: str) -> Coordinates | None:
        """Coordinates of "{block} {street}", cached forever once found.

        Returns None when nothing matches or the search fails.

        Raises:
            RateLimitedError: If OneMap answers 429.
        """
        key = geocode_key(block, street_name)
        cached = await self._cache.get(key)
        if cached is not None:
            return Coordinates.model_validate(cached)

        search_val = f"{block} {street_name}"
        try:
            response = await self._http.get(
                f"{self._base_url}/api/common/elastic/search",
                params={"searchVal": search_val, "returnGeom": "Y", "getAddrDetails": "Y"},
            )
        except RateLimitedError:
            raise
        except UpstreamError as e:
            logger.warning("geocode_failed", address=search_val, error=str(e))
            return None

        body = response.json()
        results = body.get("results") or []
        if not body.get("found") or not results:
            logger.warning("geocode_no_results", address=search_val)
            return None

        lat = parse_float(results[0].get("LATITUDE"))
        lon = parse_float(results[0].get("LONGITUDE"))
        if lat is None or lon is None:
            logger.warning("geocode_bad_coordinates", address=search_val)
            return None

        coords = Coordinates(latitude=lat, longitude=lon)
        await self._cache.set(key, coords.model_dump(), ttl_seconds=CacheTTL.GEOCODE)
        return coords

    async def nearest_transit(self, lat: float, lon: float) -> NearestTransit | None:
        """First MRT station within the reverse-geocode buffer, with haversine distance.

        Raises:
            RateLimitedError: If OneMap answers 429.
            EnrichmentAuthError: If no token can be obtained.
        """
        headers = await self._auth_headers()
        try:
            response = await self._http.get(
                f"{self._base_url}/api/public/revgeocode",
                params={
                    "location": f"{lat},{lon}",
                    "buffer": TRANSIT_BUFFER_METERS,
                    "addressType": "all",
                },
                headers=headers,
            )
        except RateLimitedError:
            raise
        except UpstreamError as e:
            logger.warning("transit_lookup_failed", lat=lat, lon=lon, error=str(e))
            return None

        for info in response.json().get("GeocodeInfo") or []:
            name = info.get("BUILDINGNAME") or info.get("ROAD") or ""
            if not _is_transit_name(name):
                continue
            station_lat = parse_float(info.get("LATITUDE"))
            station_lon = parse_float(info.get("LONGITUDE"))
            if station_lat is None or station_lon is None:
                continue
            return NearestTransit(
                name=name,
                distance_meters=haversine_meters(lat, lon, station_lat, station_lon),
            )
        return None

    async def amenity_count(self, lat: float, lon: float, theme: AmenityTheme) -> int:
        """Number of theme features within the ~500m box around a point.

        The first ``SrchResults`` row is metadata, so it is not counted.
        Missing themes (404) and failed lookups count as 0.

        Raises:
            RateLimitedError: If OneMap answers 429.
            EnrichmentAuthError: If no token can be obtained.
        """
        headers = await self._auth_headers()
        async with self._amenity_semaphore:
            try:
                response = await self._http.get(
                    f"{self._base_url}/api/public/themesvc/retrieveTheme",
                    params={
                        "queryName": theme.value,
                        "extents": bounding_box_extents(lat, lon),
                    },
                    headers=headers,
                )
            except RateLimitedError:
                raise
            except UpstreamError as e:
                if e.status_code != 404:
                    logger.warning("amenity_lookup_failed", theme=theme.value, error=str(e))
                return 0

        results: Any = response.json().get("SrchResults")
        if isinstance(results, list) and len(results) > 1:
            return len(results) - 1
        return 0

    async def amenities(self, lat: float, lon: float) -> AmenityCounts:
        """Counts for every amenity theme, fetched concurrently.

        The first failing lookup cancels the rest.
        """
        try:
            async with asyncio.TaskGroup() as tg:
                tasks = {
                    theme: tg.create_task(self.amenity_count(lat, lon, theme))
                    for theme in AmenityTheme
                }
        except ExceptionGroup as eg:
            raise primary_error(eg) from eg
        return AmenityCounts(
            schools=tasks[AmenityTheme.SCHOOLS].result(),
            malls=tasks[AmenityTheme.MALLS].result(),
            parks=tasks[AmenityTheme.PARKS].result(),
            hawkers=tasks[AmenityTheme.HAWKERS].result(),
        )
