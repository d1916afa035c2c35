"""data.gov.sg HDB resale price feed: paging and record normalization."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any, Final

from pydantic import ValidationError

from hdb_insights.clients.http import RateLimitedClient
from hdb_insights.errors import RateLimitedError, UpstreamError
from hdb_insights.logging import get_logger
from hdb_insights.models import Transaction
from hdb_insights.utils.parsing import extract_lease_years, parse_float, parse_int

logger = get_logger(__name__)

DEFAULT_API_URL: Final = "https://data.gov.sg/api/action/datastore_search"
DEFAULT_RESOURCE_ID: Final = "d_8b84c4ee58e3cfc0ece0d773c8ca6abc"
NEWEST_FIRST: Final = "month desc"


@dataclass(frozen=True)
class FeedPage:
    """One page of the feed after normalization.

    ``raw_count`` is the number of records the upstream returned, before
    malformed records were dropped; it decides whether the page was short.
    """

    offset: int
    records: list[Transaction] = field(default_factory=list)
    raw_count: int = 0
    newest_month: str | None = None
    rate_limited: bool = False


def _text(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def normalize_record(raw: dict[str, Any]) -> Transaction | None:
    """Convert a raw upstream record into a Transaction.

    Returns None (and logs) when price, area or an identifying field is
    missing or unparseable. An unparseable lease string only nulls the
    derived remaining_lease_years.
    """
    price = parse_int(raw.get("resale_price"))
    area = parse_float(raw.get("floor_area_sqm"))
    if price is None or price <= 0 or area is None or area <= 0:
        logger.warning(
            "record_skipped_bad_numbers",
            month=raw.get("month"),
            block=raw.get("block"),
            street_name=raw.get("street_name"),
            resale_price=raw.get("resale_price"),
            floor_area_sqm=raw.get("floor_area_sqm"),
        )
        return None

    remaining_lease = _text(raw.get("remaining_lease"))
    try:
        return Transaction(
            month=_text(raw.get("month")) or "",
            town=_text(raw.get("town")) or "",
            flat_type=_text(raw.get("flat_type")) or "",
            block=_text(raw.get("block")) or "",
            street_name=_text(raw.get("street_name")) or "",
            storey_range=_text(raw.get("storey_range")) or "",
            floor_area_sqm=area,
            flat_model=_text(raw.get("flat_model")),
            lease_commence_date=parse_int(raw.get("lease_commence_date")),
            remaining_lease=remaining_lease,
            remaining_lease_years=extract_lease_years(remaining_lease),
            resale_price=price,
        )
    except ValidationError as e:
        logger.warning(
            "record_skipped_invalid",
            month=raw.get("month"),
            block=raw.get("block"),
            street_name=raw.get("street_name"),
            errors=e.error_count(),
        )
        return None


class ResaleFeedClient:
    """Client for the HDB resale prices datastore, newest records first."""

    def __init__(
        self,
        http: RateLimitedClient,
        *,
        api_url: str = DEFAULT_API_URL,
        resource_id: str = DEFAULT_RESOURCE_ID,
        page_size: int = 1000,
        max_pages: int = 50,
        page_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._http = http
        self._api_url = api_url
        self._resource_id = resource_id
        self.page_size = page_size
        self.max_pages = max_pages
        self._page_delay = page_delay
        self._sleep = sleep

    async def fetch_page(self, offset: int, page_size: int | None = None) -> FeedPage:
        """Fetch and normalize one page.

        A 429 yields an empty page with ``rate_limited=True``.

        Raises:
            UpstreamError: On any other failed status, or a body with
                ``success: false``.
        """
        limit = page_size or self.page_size
        try:
            response = await self._http.get(
                self._api_url,
                params={
                    "resource_id": self._resource_id,
                    "limit": limit,
                    "offset": offset,
                    "sort": NEWEST_FIRST,
                },
            )
        except RateLimitedError:
            logger.warning("feed_rate_limited", offset=offset)
            return FeedPage(offset=offset, rate_limited=True)

        body = response.json()
        if not body.get("success"):
            raise UpstreamError(
                f"feed returned success=false at offset {offset}",
                status_code=response.status_code,
                transient=True,
            )

        raw_records: list[dict[str, Any]] = body.get("result", {}).get("records", [])
        records = [
            txn
            for txn in (normalize_record(raw) for raw in raw_records)
            if txn is not None
        ]
        newest = _text(raw_records[0].get("month")) if raw_records else None
        return FeedPage(
            offset=offset,
            records=records,
            raw_count=len(raw_records),
            newest_month=newest,
        )

    async def iter_pages(self, watermark: str) -> AsyncIterator[FeedPage]:
        """Lazily page through the feed, keeping records with ``month >= watermark``.

        Stops after a short page, a page whose newest record predates the
        watermark, the page cap, or a rate-limited page (which is yielded
        so the caller can see the soft stop).
        """
        for page_index in range(self.max_pages):
            if page_index > 0 and self._page_delay > 0:
                await self._sleep(self._page_delay)

            offset = page_index * self.page_size
            page = await self.fetch_page(offset)
            if page.rate_limited:
                yield page
                return

            kept = [txn for txn in page.records if txn.month >= watermark]
            logger.info(
                "feed_page_fetched",
                offset=offset,
                received=page.raw_count,
                kept=len(kept),
                newest_month=page.newest_month,
            )
            yield replace(page, records=kept)

            if page.raw_count < self.page_size:
                logger.info("feed_end_of_data", offset=offset)
                return
            if page.newest_month is not None and page.newest_month < watermark:
                logger.info(
                    "feed_passed_watermark", newest_month=page.newest_month, watermark=watermark
                )
                return

        logger.info("feed_page_cap_reached", max_pages=self.max_pages)
