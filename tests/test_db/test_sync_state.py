"""Tests for the sync_state claim/complete lifecycle."""

from datetime import UTC, datetime, timedelta

from hdb_insights.db import MarketStorage
from hdb_insights.models import SyncKind, SyncStatus


class TestSeed:
    async def test_every_kind_starts_pending(self, storage: MarketStorage) -> None:
        for kind in SyncKind:
            state = await storage.get_sync_state(kind)
            assert state is not None
            assert state.status == SyncStatus.PENDING
            assert state.last_sync_at is None

    async def test_reinitialize_keeps_existing_rows(self, storage: MarketStorage) -> None:
        await storage.complete_sync(
            SyncKind.TRANSACTION_SYNC, SyncStatus.COMPLETED, records_processed=7
        )
        await storage.initialize()

        state = await storage.get_sync_state(SyncKind.TRANSACTION_SYNC)
        assert state is not None
        assert state.status == SyncStatus.COMPLETED
        assert state.records_processed == 7


class TestClaim:
    async def test_claim_marks_running(self, storage: MarketStorage) -> None:
        assert await storage.claim_sync(SyncKind.TRANSACTION_SYNC) is True

        state = await storage.get_sync_state(SyncKind.TRANSACTION_SYNC)
        assert state is not None
        assert state.status == SyncStatus.RUNNING
        assert state.started_at is not None

    async def test_second_claim_is_rejected(self, storage: MarketStorage) -> None:
        assert await storage.claim_sync(SyncKind.TRANSACTION_SYNC) is True
        assert await storage.claim_sync(SyncKind.TRANSACTION_SYNC) is False

    async def test_kinds_do_not_share_a_claim(self, storage: MarketStorage) -> None:
        assert await storage.claim_sync(SyncKind.TRANSACTION_SYNC) is True
        assert await storage.claim_sync(SyncKind.ENRICHMENT) is True

    async def test_stale_claim_can_be_taken_over(self, storage: MarketStorage) -> None:
        started = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
        assert await storage.claim_sync(SyncKind.TRANSACTION_SYNC, now=started) is True

        within_lease = started + timedelta(minutes=10)
        assert await storage.claim_sync(SyncKind.TRANSACTION_SYNC, now=within_lease) is False

        after_lease = started + timedelta(minutes=16)
        assert await storage.claim_sync(SyncKind.TRANSACTION_SYNC, now=after_lease) is True

    async def test_claim_after_completion(self, storage: MarketStorage) -> None:
        await storage.claim_sync(SyncKind.TRANSACTION_SYNC)
        await storage.complete_sync(SyncKind.TRANSACTION_SYNC, SyncStatus.COMPLETED)
        assert await storage.claim_sync(SyncKind.TRANSACTION_SYNC) is True

    async def test_claim_clears_previous_error(self, storage: MarketStorage) -> None:
        await storage.claim_sync(SyncKind.ENRICHMENT)
        await storage.complete_sync(SyncKind.ENRICHMENT, SyncStatus.FAILED, error_message="boom")
        await storage.claim_sync(SyncKind.ENRICHMENT)

        state = await storage.get_sync_state(SyncKind.ENRICHMENT)
        assert state is not None
        assert state.error_message is None


class TestComplete:
    async def test_failed_records_message(self, storage: MarketStorage) -> None:
        await storage.claim_sync(SyncKind.TRANSACTION_SYNC)
        await storage.complete_sync(
            SyncKind.TRANSACTION_SYNC,
            SyncStatus.FAILED,
            records_processed=3,
            error_message="HTTP 503",
        )

        state = await storage.get_sync_state(SyncKind.TRANSACTION_SYNC)
        assert state is not None
        assert state.status == SyncStatus.FAILED
        assert state.records_processed == 3
        assert state.error_message == "HTTP 503"
        assert state.last_sync_at is not None
