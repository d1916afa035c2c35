"""Sync orchestration: import new transactions, refresh statistics, score units."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date

from hdb_insights.analysis.scoring import FAR_MRT_DISTANCE, NO_MRT_NAME, score_unit
from hdb_insights.analysis.statistics import StatisticsAggregator
from hdb_insights.clients.http import RateLimitedClient
from hdb_insights.clients.onemap import OneMapClient
from hdb_insights.clients.resale_feed import ResaleFeedClient
from hdb_insights.config import Settings
from hdb_insights.db import MarketStorage
from hdb_insights.errors import (
    EnrichmentAuthError,
    RateLimitedError,
    SyncAlreadyRunningError,
    SyncFailedError,
    primary_error,
)
from hdb_insights.logging import get_logger
from hdb_insights.models import (
    SyncKind,
    SyncStatus,
    Transaction,
    UnitFacts,
    UnitScore,
)
from hdb_insights.utils.months import month_of, shift_month

logger = get_logger(__name__)


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one transaction sync."""

    fetched: int
    inserted: int
    duration_ms: int
    enriched: int = 0
    rate_limited: bool = False


@dataclass(frozen=True)
class UnitEnrichmentDetail:
    """Per-unit summary reported by an enrichment run."""

    address: str
    score: float
    transit: str


@dataclass(frozen=True)
class EnrichmentRunResult:
    """Outcome of one standalone enrichment batch."""

    processed: int
    duration_ms: int
    details: list[UnitEnrichmentDetail] = field(default_factory=list)
    rate_limited: bool = False


@dataclass
class _BacklogOutcome:
    details: list[UnitEnrichmentDetail] = field(default_factory=list)
    attempted: int = 0
    rate_limited: bool = False


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class SyncOrchestrator:
    """Coordinates one sync or enrichment invocation against the store.

    Every run first claims its sync_state row, so overlapping invocations
    of the same kind are rejected, and always leaves the row in a terminal
    state.
    """

    def __init__(
        self,
        storage: MarketStorage,
        feed: ResaleFeedClient,
        onemap: OneMapClient | None,
        *,
        lookback_months: int = 6,
        statistics_window_months: int = 6,
        sync_backlog_limit: int = 200,
        enrich_backlog_limit: int = 5,
        score_stale_days: int = 30,
        unit_delay: float = 0.2,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._storage = storage
        self._feed = feed
        self._onemap = onemap
        self._lookback_months = lookback_months
        self._statistics = StatisticsAggregator(storage)
        self._statistics_window_months = statistics_window_months
        self._sync_backlog_limit = sync_backlog_limit
        self._enrich_backlog_limit = enrich_backlog_limit
        self._score_stale_days = score_stale_days
        self._unit_delay = unit_delay
        self._sleep = sleep
        self._today = today
        self._owned_clients: list[RateLimitedClient] = []

    @classmethod
    def from_settings(cls, settings: Settings, storage: MarketStorage) -> SyncOrchestrator:
        """Build an orchestrator with clients configured from settings.

        OneMap enrichment is disabled when either credential is missing.
        """
        feed_http = RateLimitedClient(timeout=settings.request_timeout_seconds)
        feed = ResaleFeedClient(
            feed_http,
            api_url=settings.resale_api_url,
            resource_id=settings.resale_resource_id,
            page_size=settings.page_size,
            max_pages=settings.max_pages,
            page_delay=settings.page_delay_seconds,
        )
        owned = [feed_http]

        onemap: OneMapClient | None = None
        if settings.has_onemap_credentials:
            onemap_http = RateLimitedClient(
                min_interval=settings.onemap_call_interval_seconds,
                timeout=settings.request_timeout_seconds,
            )
            onemap = OneMapClient(
                onemap_http,
                email=settings.onemap_email,
                password=settings.onemap_password,
                cache=storage.cache,
                base_url=settings.onemap_base_url,
            )
            owned.append(onemap_http)

        orchestrator = cls(
            storage,
            feed,
            onemap,
            lookback_months=settings.default_lookback_months,
            statistics_window_months=settings.statistics_window_months,
            sync_backlog_limit=settings.sync_backlog_limit,
            enrich_backlog_limit=settings.enrich_backlog_limit,
            score_stale_days=settings.score_stale_days,
            unit_delay=settings.unit_delay_seconds,
        )
        orchestrator._owned_clients = owned
        return orchestrator

    async def close(self) -> None:
        """Close HTTP clients created by ``from_settings``."""
        for client in self._owned_clients:
            await client.close()
        self._owned_clients = []

    async def compute_watermark(self) -> str:
        """Newest stored month, or the default lookback before the current month."""
        latest = await self._storage.get_latest_month()
        if latest is not None:
            return latest
        return shift_month(month_of(self._today()), -self._lookback_months)

    # ------------------------------------------------------------------
    # Transaction sync
    # ------------------------------------------------------------------

    async def run_sync(self) -> SyncResult:
        """Import new transactions, recompute statistics and enrich a backlog.

        Raises:
            SyncAlreadyRunningError: If another run holds the claim.
            SyncFailedError: If any phase fails; the state is marked failed.
        """
        start = time.monotonic()
        kind = SyncKind.TRANSACTION_SYNC
        if not await self._storage.claim_sync(kind):
            raise SyncAlreadyRunningError(kind.value)

        inserted = 0
        try:
            watermark = await self.compute_watermark()
            logger.info("sync_started", watermark=watermark)

            records: list[Transaction] = []
            rate_limited = False
            async for page in self._feed.iter_pages(watermark):
                if page.rate_limited:
                    rate_limited = True
                    break
                records.extend(page.records)

            inserted = await self._storage.upsert_transactions(records)
            await self._statistics.recompute(self._statistics_window_months)

            outcome = await self._enrich_backlog(self._sync_backlog_limit)
            enriched = len(outcome.details)
        except Exception as e:
            logger.error("sync_failed", inserted=inserted, exc_info=True)
            await self._storage.complete_sync(
                kind,
                SyncStatus.FAILED,
                records_processed=inserted,
                error_message=str(e) or type(e).__name__,
            )
            raise SyncFailedError(str(e) or type(e).__name__) from e

        await self._storage.complete_sync(kind, SyncStatus.COMPLETED, records_processed=inserted)
        result = SyncResult(
            fetched=len(records),
            inserted=inserted,
            duration_ms=_elapsed_ms(start),
            enriched=enriched,
            rate_limited=rate_limited or outcome.rate_limited,
        )
        logger.info(
            "sync_complete",
            fetched=result.fetched,
            inserted=result.inserted,
            enriched=result.enriched,
            rate_limited=result.rate_limited,
            duration_ms=result.duration_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    async def run_enrichment(self) -> EnrichmentRunResult:
        """Enrich and score a small backlog of units.

        Raises:
            SyncAlreadyRunningError: If another enrichment run holds the claim.
            SyncFailedError: If the batch fails as a whole (e.g. auth).
        """
        start = time.monotonic()
        kind = SyncKind.ENRICHMENT
        if not await self._storage.claim_sync(kind):
            raise SyncAlreadyRunningError(kind.value)

        try:
            outcome = await self._enrich_backlog(self._enrich_backlog_limit)
        except Exception as e:
            logger.error("enrichment_failed", exc_info=True)
            await self._storage.complete_sync(
                kind, SyncStatus.FAILED, error_message=str(e) or type(e).__name__
            )
            raise SyncFailedError(str(e) or type(e).__name__) from e

        await self._storage.complete_sync(
            kind, SyncStatus.COMPLETED, records_processed=len(outcome.details)
        )
        result = EnrichmentRunResult(
            processed=len(outcome.details),
            duration_ms=_elapsed_ms(start),
            details=outcome.details,
            rate_limited=outcome.rate_limited,
        )
        logger.info(
            "enrichment_complete",
            processed=result.processed,
            attempted=outcome.attempted,
            rate_limited=outcome.rate_limited,
            duration_ms=result.duration_ms,
        )
        return result

    async def _enrich_backlog(self, limit: int) -> _BacklogOutcome:
        """Score up to ``limit`` unscored or stale units.

        Per-unit failures are logged and skipped. A 429 stops the batch early.

        Raises:
            EnrichmentAuthError: If no OneMap token can be obtained.
        """
        outcome = _BacklogOutcome()
        if self._onemap is None:
            logger.warning("enrichment_skipped_no_credentials")
            return outcome

        backlog = await self._storage.select_enrichment_backlog(
            limit, stale_days=self._score_stale_days
        )
        if not backlog:
            logger.info("enrichment_backlog_empty")
            return outcome

        town_medians = await self._storage.get_town_medians()
        logger.info("enrichment_started", backlog=len(backlog))

        for index, txn in enumerate(backlog):
            if index > 0 and self._unit_delay > 0:
                await self._sleep(self._unit_delay)
            outcome.attempted += 1
            try:
                detail = await self._enrich_unit(self._onemap, txn, town_medians)
            except RateLimitedError:
                outcome.rate_limited = True
                logger.warning(
                    "enrichment_rate_limited",
                    address=txn.address,
                    remaining=len(backlog) - index,
                )
                break
            except EnrichmentAuthError:
                raise
            except Exception:
                logger.error("unit_enrichment_failed", address=txn.address, exc_info=True)
                await self._storage.record_enrichment_skip(txn.block, txn.street_name, "error")
                continue
            if detail is not None:
                outcome.details.append(detail)

        return outcome

    async def _enrich_unit(
        self,
        onemap: OneMapClient,
        txn: Transaction,
        town_medians: dict[tuple[str, str], float],
    ) -> UnitEnrichmentDetail | None:
        coords = await onemap.geocode(txn.block, txn.street_name)
        if coords is None:
            logger.warning("unit_skipped_no_geocode", address=txn.address)
            await self._storage.record_enrichment_skip(txn.block, txn.street_name, "no_geocode")
            return None

        try:
            async with asyncio.TaskGroup() as tg:
                transit_task = tg.create_task(
                    onemap.nearest_transit(coords.latitude, coords.longitude)
                )
                amenities_task = tg.create_task(
                    onemap.amenities(coords.latitude, coords.longitude)
                )
        except ExceptionGroup as eg:
            raise primary_error(eg) from eg
        transit, amenities = transit_task.result(), amenities_task.result()
        history = await self._storage.get_price_history(txn.town, txn.flat_type)

        mrt_distance = transit.distance_meters if transit else FAR_MRT_DISTANCE
        nearest_mrt = transit.name if transit else NO_MRT_NAME
        breakdown = score_unit(
            UnitFacts(
                resale_price=txn.resale_price,
                town_median=town_medians.get((txn.town, txn.flat_type), 0.0),
                mrt_distance=mrt_distance,
                remaining_lease_years=txn.remaining_lease_years,
                price_history=tuple(history),
                amenities=amenities,
            )
        )

        await self._storage.upsert_score(
            UnitScore(
                block=txn.block,
                street_name=txn.street_name,
                town=txn.town,
                flat_type=txn.flat_type,
                breakdown=breakdown,
                mrt_distance=mrt_distance,
                nearest_mrt=nearest_mrt,
                nearby_schools=amenities.schools,
                nearby_malls=amenities.malls,
                nearby_parks=amenities.parks,
                nearby_hawkers=amenities.hawkers,
            )
        )
        await self._storage.backfill_coordinates(txn.block, txn.street_name, coords, transit)

        logger.debug(
            "unit_scored",
            address=txn.address,
            total=breakdown.total,
            nearest_mrt=nearest_mrt,
        )
        return UnitEnrichmentDetail(address=txn.address, score=breakdown.total, transit=nearest_mrt)
