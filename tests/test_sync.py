"""Tests for the sync orchestrator."""

from collections.abc import AsyncIterator
from datetime import date
from typing import Any
from unittest.mock import AsyncMock

import pytest
from pydantic import SecretStr
from pytest_httpx import HTTPXMock

from hdb_insights.clients.http import RateLimitedClient
from hdb_insights.clients.resale_feed import FeedPage, ResaleFeedClient
from hdb_insights.config import Settings
from hdb_insights.db import MarketStorage
from hdb_insights.errors import (
    EnrichmentAuthError,
    RateLimitedError,
    SyncAlreadyRunningError,
    SyncFailedError,
    UpstreamError,
)
from hdb_insights.models import (
    AmenityCounts,
    Coordinates,
    NearestTransit,
    SyncKind,
    SyncStatus,
    Transaction,
)
from hdb_insights.sync import SyncOrchestrator

TODAY = date(2024, 7, 15)


class FakeFeed:
    """Serves fixed pages, applying the watermark like the real feed."""

    def __init__(self, pages: list[list[Transaction]], *, fail_after: int | None = None) -> None:
        self.pages = pages
        self.fail_after = fail_after
        self.watermarks: list[str] = []

    async def iter_pages(self, watermark: str) -> AsyncIterator[FeedPage]:
        self.watermarks.append(watermark)
        for index, records in enumerate(self.pages):
            if self.fail_after is not None and index >= self.fail_after:
                raise UpstreamError("HTTP 503 from feed", status_code=503, transient=True)
            kept = [t for t in records if t.month >= watermark]
            yield FeedPage(offset=index, records=kept, raw_count=len(records))


class FakeOneMap:
    """Canned OneMap answers keyed by block."""

    def __init__(
        self,
        *,
        missing: set[str] | None = None,
        broken: set[str] | None = None,
        rate_limited: set[str] | None = None,
        auth_fails: bool = False,
        token_rate_limited: bool = False,
        transit: NearestTransit | None = None,
    ) -> None:
        self.missing = missing or set()
        self.broken = broken or set()
        self.rate_limited = rate_limited or set()
        self.auth_fails = auth_fails
        self.token_rate_limited = token_rate_limited
        self.transit = transit
        self.geocoded: list[str] = []

    async def geocode(self, block: str, street_name: str) -> Coordinates | None:
        self.geocoded.append(block)
        if block in self.rate_limited:
            raise RateLimitedError()
        if block in self.broken:
            raise RuntimeError("unexpected payload")
        if block in self.missing:
            return None
        return Coordinates(latitude=1.3521, longitude=103.9448)

    async def nearest_transit(self, lat: float, lon: float) -> NearestTransit | None:
        if self.auth_fails:
            raise EnrichmentAuthError("bad credentials")
        if self.token_rate_limited:
            raise RateLimitedError("HTTP 429 from token endpoint")
        return self.transit

    async def amenities(self, lat: float, lon: float) -> AmenityCounts:
        return AmenityCounts(schools=2, malls=1)


def _orchestrator(
    storage: MarketStorage, feed: Any, onemap: Any = None, **kwargs: Any
) -> SyncOrchestrator:
    kwargs.setdefault("unit_delay", 0)
    return SyncOrchestrator(storage, feed, onemap, today=lambda: TODAY, **kwargs)


@pytest.fixture
def records(make_transaction: Any) -> list[Transaction]:
    return [
        make_transaction(month="2024-06", block="1", resale_price=500000),
        make_transaction(month="2024-06", block="2", resale_price=520000),
        make_transaction(month="2024-05", block="3", resale_price=480000),
        make_transaction(month="2023-12", block="4", resale_price=450000),
    ]


class TestWatermark:
    async def test_empty_store_uses_lookback(self, storage: MarketStorage) -> None:
        orchestrator = _orchestrator(storage, FakeFeed([]))
        assert await orchestrator.compute_watermark() == "2024-01"

    async def test_latest_stored_month(
        self, storage: MarketStorage, make_transaction: Any
    ) -> None:
        await storage.upsert_transactions([make_transaction(month="2024-03")])
        orchestrator = _orchestrator(storage, FakeFeed([]))
        assert await orchestrator.compute_watermark() == "2024-03"

    async def test_watermark_never_moves_back(
        self, storage: MarketStorage, records: list[Transaction], make_transaction: Any
    ) -> None:
        orchestrator = _orchestrator(storage, FakeFeed([records]))
        await orchestrator.run_sync()
        before = await orchestrator.compute_watermark()

        await storage.upsert_transactions([make_transaction(month="2022-01")])
        assert await orchestrator.compute_watermark() >= before


class TestRunSync:
    async def test_inserts_records_at_or_after_watermark(
        self, storage: MarketStorage, records: list[Transaction]
    ) -> None:
        feed = FakeFeed([records[:2], records[2:]])
        result = await _orchestrator(storage, feed).run_sync()

        assert feed.watermarks == ["2024-01"]
        assert result.fetched == 3
        assert result.inserted == 3
        assert result.rate_limited is False
        assert await storage.get_transaction_count() == 3

    async def test_running_twice_inserts_once(
        self, storage: MarketStorage, records: list[Transaction]
    ) -> None:
        feed = FakeFeed([records])
        orchestrator = _orchestrator(storage, feed)

        first = await orchestrator.run_sync()
        second = await orchestrator.run_sync()

        assert first.inserted == 3
        assert second.inserted == 0
        assert feed.watermarks == ["2024-01", "2024-06"]
        assert await storage.get_transaction_count() == 3

    async def test_marks_completed(
        self, storage: MarketStorage, records: list[Transaction]
    ) -> None:
        await _orchestrator(storage, FakeFeed([records])).run_sync()

        state = await storage.get_sync_state(SyncKind.TRANSACTION_SYNC)
        assert state is not None
        assert state.status == SyncStatus.COMPLETED
        assert state.records_processed == 3
        assert state.error_message is None

    async def test_recomputes_statistics(
        self, storage: MarketStorage, records: list[Transaction]
    ) -> None:
        await _orchestrator(storage, FakeFeed([records])).run_sync()

        june = await storage.get_statistics("TAMPINES", "4 ROOM", "2024-06")
        assert june is not None
        assert june.median_price == 510000

    async def test_failure_marks_failed_and_keeps_state_consistent(
        self, storage: MarketStorage, records: list[Transaction]
    ) -> None:
        feed = FakeFeed([records, records], fail_after=1)
        with pytest.raises(SyncFailedError, match="HTTP 503"):
            await _orchestrator(storage, feed).run_sync()

        state = await storage.get_sync_state(SyncKind.TRANSACTION_SYNC)
        assert state is not None
        assert state.status == SyncStatus.FAILED
        assert state.error_message == "HTTP 503 from feed"

        # the failed run released its claim
        assert await storage.claim_sync(SyncKind.TRANSACTION_SYNC) is True

    async def test_overlapping_run_is_rejected(
        self, storage: MarketStorage, records: list[Transaction]
    ) -> None:
        assert await storage.claim_sync(SyncKind.TRANSACTION_SYNC) is True
        feed = FakeFeed([records])

        with pytest.raises(SyncAlreadyRunningError):
            await _orchestrator(storage, feed).run_sync()

        assert feed.watermarks == []
        state = await storage.get_sync_state(SyncKind.TRANSACTION_SYNC)
        assert state is not None
        assert state.status == SyncStatus.RUNNING

    async def test_rate_limited_page_is_a_soft_stop(
        self, storage: MarketStorage, records: list[Transaction]
    ) -> None:
        class RateLimitedFeed(FakeFeed):
            async def iter_pages(self, watermark: str) -> AsyncIterator[FeedPage]:
                yield FeedPage(offset=0, records=records[:2], raw_count=2)
                yield FeedPage(offset=2, rate_limited=True)

        result = await _orchestrator(storage, RateLimitedFeed([])).run_sync()

        assert result.rate_limited is True
        assert result.inserted == 2
        state = await storage.get_sync_state(SyncKind.TRANSACTION_SYNC)
        assert state is not None
        assert state.status == SyncStatus.COMPLETED

    async def test_without_credentials_enrichment_is_skipped(
        self, storage: MarketStorage, records: list[Transaction]
    ) -> None:
        result = await _orchestrator(storage, FakeFeed([records]), onemap=None).run_sync()

        assert result.enriched == 0
        assert await storage.get_score("1", "TAMPINES ST 11", "TAMPINES", "4 ROOM") is None

    async def test_enriches_backlog(
        self, storage: MarketStorage, records: list[Transaction]
    ) -> None:
        transit = NearestTransit(name="TAMPINES MRT STATION", distance_meters=300)
        onemap = FakeOneMap(transit=transit)
        result = await _orchestrator(storage, FakeFeed([records]), onemap).run_sync()

        assert result.enriched == 3
        score = await storage.get_score("1", "TAMPINES ST 11", "TAMPINES", "4 ROOM")
        assert score is not None
        assert score.nearest_mrt == "TAMPINES MRT STATION"
        assert score.mrt_distance == 300
        assert score.nearby_schools == 2
        assert score.breakdown.amenities == 60

        stored = await storage.get_transactions_between("2024-01", "2024-12")
        [txn] = [t for t in stored if t.block == "1"]
        assert txn.latitude == 1.3521
        assert txn.nearest_mrt == "TAMPINES MRT STATION"

    async def test_auth_failure_fails_sync_but_keeps_transactions(
        self, storage: MarketStorage, records: list[Transaction]
    ) -> None:
        onemap = FakeOneMap(auth_fails=True)
        with pytest.raises(SyncFailedError, match="bad credentials"):
            await _orchestrator(storage, FakeFeed([records]), onemap).run_sync()

        state = await storage.get_sync_state(SyncKind.TRANSACTION_SYNC)
        assert state is not None
        assert state.status == SyncStatus.FAILED
        assert state.records_processed == 3
        assert state.error_message == "bad credentials"
        assert await storage.get_transaction_count() == 3
        assert await storage.get_statistics("TAMPINES", "4 ROOM", "2024-06") is not None

    async def test_enrichment_rate_limit_is_reported(
        self, storage: MarketStorage, records: list[Transaction]
    ) -> None:
        onemap = FakeOneMap(token_rate_limited=True)
        result = await _orchestrator(storage, FakeFeed([records]), onemap).run_sync()

        assert result.rate_limited is True
        assert result.enriched == 0
        state = await storage.get_sync_state(SyncKind.TRANSACTION_SYNC)
        assert state is not None
        assert state.status == SyncStatus.COMPLETED

    async def test_backlog_limit(self, storage: MarketStorage, records: list[Transaction]) -> None:
        onemap = FakeOneMap()
        result = await _orchestrator(
            storage, FakeFeed([records]), onemap, sync_backlog_limit=2
        ).run_sync()

        assert result.enriched == 2
        assert len(onemap.geocoded) == 2


class TestRunEnrichment:
    @pytest.fixture
    async def seeded(self, storage: MarketStorage, records: list[Transaction]) -> MarketStorage:
        await storage.upsert_transactions(records)
        return storage

    async def test_scores_small_batch(self, seeded: MarketStorage) -> None:
        onemap = FakeOneMap()
        result = await _orchestrator(
            seeded, FakeFeed([]), onemap, enrich_backlog_limit=2
        ).run_enrichment()

        assert result.processed == 2
        assert [d.address for d in result.details] == ["1 TAMPINES ST 11", "2 TAMPINES ST 11"]
        state = await seeded.get_sync_state(SyncKind.ENRICHMENT)
        assert state is not None
        assert state.status == SyncStatus.COMPLETED
        assert state.records_processed == 2

    async def test_no_transit_uses_far_sentinel(self, seeded: MarketStorage) -> None:
        result = await _orchestrator(
            seeded, FakeFeed([]), FakeOneMap(transit=None), enrich_backlog_limit=1
        ).run_enrichment()

        assert result.details[0].transit == "None nearby"
        score = await seeded.get_score("1", "TAMPINES ST 11", "TAMPINES", "4 ROOM")
        assert score is not None
        assert score.mrt_distance == 1500
        assert score.breakdown.location == 0

    async def test_per_unit_failures_are_skipped(self, seeded: MarketStorage) -> None:
        onemap = FakeOneMap(missing={"1"}, broken={"2"})
        result = await _orchestrator(
            seeded, FakeFeed([]), onemap, enrich_backlog_limit=10
        ).run_enrichment()

        assert [d.address for d in result.details] == ["3 TAMPINES ST 11", "4 TAMPINES ST 11"]
        assert onemap.geocoded == ["1", "2", "3", "4"]

    async def test_unresolvable_addresses_do_not_block_the_backlog(
        self, seeded: MarketStorage
    ) -> None:
        onemap = FakeOneMap(missing={"1"}, broken={"2"})
        orchestrator = _orchestrator(seeded, FakeFeed([]), onemap, enrich_backlog_limit=2)

        first = await orchestrator.run_enrichment()
        second = await orchestrator.run_enrichment()

        assert first.processed == 0
        assert [d.address for d in second.details] == ["3 TAMPINES ST 11", "4 TAMPINES ST 11"]
        assert onemap.geocoded == ["1", "2", "3", "4"]

    async def test_rate_limit_stops_batch(self, seeded: MarketStorage) -> None:
        onemap = FakeOneMap(rate_limited={"2"})
        result = await _orchestrator(
            seeded, FakeFeed([]), onemap, enrich_backlog_limit=10
        ).run_enrichment()

        assert result.processed == 1
        assert onemap.geocoded == ["1", "2"]
        state = await seeded.get_sync_state(SyncKind.ENRICHMENT)
        assert state is not None
        assert state.status == SyncStatus.COMPLETED

    async def test_auth_failure_fails_run(self, seeded: MarketStorage) -> None:
        with pytest.raises(SyncFailedError, match="bad credentials"):
            await _orchestrator(
                seeded, FakeFeed([]), FakeOneMap(auth_fails=True)
            ).run_enrichment()

        state = await seeded.get_sync_state(SyncKind.ENRICHMENT)
        assert state is not None
        assert state.status == SyncStatus.FAILED

    async def test_rate_limited_token_completes_run(self, seeded: MarketStorage) -> None:
        result = await _orchestrator(
            seeded, FakeFeed([]), FakeOneMap(token_rate_limited=True)
        ).run_enrichment()

        assert result.rate_limited is True
        assert result.processed == 0
        state = await seeded.get_sync_state(SyncKind.ENRICHMENT)
        assert state is not None
        assert state.status == SyncStatus.COMPLETED

    async def test_fresh_scores_are_not_redone(self, seeded: MarketStorage) -> None:
        orchestrator = _orchestrator(seeded, FakeFeed([]), FakeOneMap(), enrich_backlog_limit=10)
        first = await orchestrator.run_enrichment()
        second = await orchestrator.run_enrichment()

        assert first.processed == 4
        assert second.processed == 0

    async def test_pauses_between_units(self, seeded: MarketStorage) -> None:
        sleep = AsyncMock()
        await _orchestrator(
            seeded,
            FakeFeed([]),
            FakeOneMap(),
            enrich_backlog_limit=3,
            unit_delay=0.2,
            sleep=sleep,
        ).run_enrichment()

        assert sleep.await_count == 2

    async def test_runs_alongside_transaction_sync(self, seeded: MarketStorage) -> None:
        assert await seeded.claim_sync(SyncKind.TRANSACTION_SYNC) is True
        result = await _orchestrator(seeded, FakeFeed([]), FakeOneMap()).run_enrichment()
        assert result.processed > 0


async def test_rate_limit_on_third_page_keeps_first_two(
    storage: MarketStorage, httpx_mock: HTTPXMock, raw_record: Any
) -> None:
    for blocks in (("1", "2"), ("3", "4")):
        httpx_mock.add_response(
            json={
                "success": True,
                "result": {"records": [raw_record(block=b) for b in blocks]},
            }
        )
    httpx_mock.add_response(status_code=429)

    http = RateLimitedClient()
    feed = ResaleFeedClient(
        http, api_url="https://data.example.test/api", page_size=2, page_delay=0
    )
    try:
        result = await _orchestrator(storage, feed).run_sync()
    finally:
        await http.close()

    assert result.rate_limited is True
    assert result.inserted == 4
    assert await storage.get_transaction_count() == 4
    state = await storage.get_sync_state(SyncKind.TRANSACTION_SYNC)
    assert state is not None
    assert state.status == SyncStatus.COMPLETED


class TestFromSettings:
    async def test_without_credentials(self, storage: MarketStorage) -> None:
        orchestrator = SyncOrchestrator.from_settings(Settings(onemap_email=""), storage)
        try:
            assert orchestrator._onemap is None
        finally:
            await orchestrator.close()

    async def test_with_credentials(self, storage: MarketStorage) -> None:
        settings = Settings(onemap_email="me@example.sg", onemap_password=SecretStr("pw"))
        orchestrator = SyncOrchestrator.from_settings(settings, storage)
        try:
            assert orchestrator._onemap is not None
            assert len(orchestrator._owned_clients) == 2
        finally:
            await orchestrator.close()
        assert orchestrator._owned_clients == []
