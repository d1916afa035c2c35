"""HTTP routes: sync triggers, sync status and cached market queries."""

import secrets
from typing import Annotated, Any, Final

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from hdb_insights.analysis.scoring import score_color, score_label
from hdb_insights.cache import (
    CacheTTL,
    comparison_key,
    read_through,
    scores_key,
    stats_key,
    trends_key,
)
from hdb_insights.config import Settings
from hdb_insights.db import MarketStorage
from hdb_insights.errors import SyncAlreadyRunningError, SyncFailedError
from hdb_insights.logging import get_logger
from hdb_insights.models import SyncKind
from hdb_insights.sync import SyncOrchestrator
from hdb_insights.utils.months import range_start_month
from hdb_insights.web.filters import ComparisonFilterDep, ScoreFilterDep, normalize_range

logger = get_logger(__name__)

router = APIRouter()

SCHEDULED_TRIGGER_HEADER: Final = "X-Scheduled-Trigger"
_MISSING_PARAMS: Final = "Missing required parameters: town, flat_type"


def _get_storage(request: Request) -> MarketStorage:
    return request.app.state.storage  # type: ignore[no-any-return]


def _get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator  # type: ignore[no-any-return]


def _get_settings(request: Request) -> Settings:
    return request.app.state.settings  # type: ignore[no-any-return]


def _is_authorized(request: Request, secret: str | None) -> bool:
    """Scheduled triggers carry the trigger header; manual calls carry the shared secret."""
    if request.headers.get(SCHEDULED_TRIGGER_HEADER, "").lower() == "true":
        return True
    expected = _get_settings(request).sync_secret.get_secret_value()
    if not expected or not secret:
        return False
    return secrets.compare_digest(secret.encode(), expected.encode())


def _unauthorized() -> JSONResponse:
    return JSONResponse({"error": "Unauthorized"}, status_code=401)


def _normalize(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = " ".join(value.upper().split())
    return cleaned or None


@router.get("/health")
async def health_check() -> JSONResponse:
    """Liveness check."""
    return JSONResponse({"status": "ok"})


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


@router.get("/api/sync")
async def trigger_sync(request: Request, secret: str | None = None) -> JSONResponse:
    """Run one transaction sync synchronously and report what it did."""
    if not _is_authorized(request, secret):
        logger.warning("sync_trigger_unauthorized")
        return _unauthorized()

    try:
        result = await _get_orchestrator(request).run_sync()
    except SyncAlreadyRunningError as e:
        return JSONResponse({"error": str(e)}, status_code=409)
    except SyncFailedError as e:
        return JSONResponse({"error": "Sync failed", "details": str(e)}, status_code=500)

    return JSONResponse(
        {
            "success": True,
            "records_fetched": result.fetched,
            "records_inserted": result.inserted,
            "records_enriched": result.enriched,
            "rate_limited": result.rate_limited,
            "duration_ms": result.duration_ms,
        }
    )


@router.get("/api/enrich")
async def trigger_enrichment(request: Request, secret: str | None = None) -> JSONResponse:
    """Enrich and score a small batch of units."""
    if not _is_authorized(request, secret):
        logger.warning("enrich_trigger_unauthorized")
        return _unauthorized()

    try:
        result = await _get_orchestrator(request).run_enrichment()
    except SyncAlreadyRunningError as e:
        return JSONResponse({"error": str(e)}, status_code=409)
    except SyncFailedError as e:
        return JSONResponse({"error": "Enrichment failed", "details": str(e)}, status_code=500)

    return JSONResponse(
        {
            "success": True,
            "processed": result.processed,
            "duration_ms": result.duration_ms,
            "details": [
                {"address": d.address, "score": d.score, "transit": d.transit}
                for d in result.details
            ],
        }
    )


@router.get("/api/sync-status")
async def sync_status(
    request: Request, kind: str = SyncKind.TRANSACTION_SYNC.value
) -> JSONResponse:
    """Current state of a sync kind (transaction_sync by default)."""
    try:
        sync_kind = SyncKind(kind)
    except ValueError:
        return JSONResponse({"error": f"Unknown sync kind: {kind}"}, status_code=400)

    state = await _get_storage(request).get_sync_state(sync_kind)
    if state is None:
        return JSONResponse({"error": "Sync state not found"}, status_code=404)

    return JSONResponse(
        {
            "kind": state.kind.value,
            "status": state.status.value,
            "last_sync_at": state.last_sync_at.isoformat() if state.last_sync_at else None,
            "started_at": state.started_at.isoformat() if state.started_at else None,
            "records_processed": state.records_processed,
            "error_message": state.error_message,
        }
    )


# ---------------------------------------------------------------------------
# Cached market queries
# ---------------------------------------------------------------------------


@router.get("/api/comparison")
async def comparison(
    request: Request,
    filters: ComparisonFilterDep,
    town: str | None = None,
    flat_type: str | None = None,
    range_param: Annotated[str | None, Query(alias="range")] = None,
) -> JSONResponse:
    """Monthly price comparison for a town and flat type, newest month first."""
    town_key, flat_key = _normalize(town), _normalize(flat_type)
    if town_key is None or flat_key is None:
        return JSONResponse({"error": _MISSING_PARAMS}, status_code=400)
    range_code = normalize_range(range_param)
    storage = _get_storage(request)

    async def load() -> dict[str, Any]:
        rows = await storage.get_comparison(
            town_key, flat_key, range_start_month(range_code), filters
        )
        return {"town": town_key, "flat_type": flat_key, "range": range_code, "data": rows}

    try:
        response = await read_through(
            storage.cache,
            comparison_key(town_key, flat_key, range_code, filters.cache_fragment),
            CacheTTL.COMPARISON,
            load,
        )
    except Exception:
        logger.error("comparison_query_failed", town=town_key, flat_type=flat_key, exc_info=True)
        return JSONResponse({"error": "Database query failed"}, status_code=500)

    return JSONResponse(
        response.to_dict(),
        headers={"Cache-Control": f"public, max-age={CacheTTL.COMPARISON}"},
    )


@router.get("/api/trends")
async def trends(
    request: Request,
    town: str | None = None,
    flat_type: str | None = None,
    range_param: Annotated[str | None, Query(alias="range")] = None,
) -> JSONResponse:
    """Monthly median trend with moving average and summary, oldest month first."""
    town_key, flat_key = _normalize(town), _normalize(flat_type)
    if town_key is None or flat_key is None:
        return JSONResponse({"error": _MISSING_PARAMS}, status_code=400)
    range_code = normalize_range(range_param)
    storage = _get_storage(request)

    async def load() -> dict[str, Any]:
        series = await storage.get_trends(town_key, flat_key, range_start_month(range_code))
        return {"town": town_key, "flat_type": flat_key, "range": range_code, **series}

    try:
        response = await read_through(
            storage.cache, trends_key(town_key, flat_key, range_code), CacheTTL.TRENDS, load
        )
    except Exception:
        logger.error("trends_query_failed", town=town_key, flat_type=flat_key, exc_info=True)
        return JSONResponse({"error": "Database query failed"}, status_code=500)

    return JSONResponse(response.to_dict())


@router.get("/api/scores")
async def top_scores(request: Request, filters: ScoreFilterDep) -> JSONResponse:
    """Best-value units, highest score first."""
    storage = _get_storage(request)

    async def load() -> dict[str, Any]:
        rows = await storage.get_top_scores(filters)
        results = [
            {
                **row,
                "score_label": score_label(row["total_score"]),
                "score_color": score_color(row["total_score"]),
            }
            for row in rows
        ]
        return {
            "results": results,
            "count": len(results),
            "filters": filters.model_dump(),
        }

    try:
        response = await read_through(
            storage.cache, scores_key(filters.cache_fragment), CacheTTL.SCORES, load
        )
    except Exception:
        logger.error("scores_query_failed", exc_info=True)
        return JSONResponse({"error": "Database query failed"}, status_code=500)

    return JSONResponse(response.to_dict())


@router.get("/api/stats")
async def market_stats(request: Request) -> JSONResponse:
    """Store-wide market overview."""
    storage = _get_storage(request)
    try:
        response = await read_through(
            storage.cache, stats_key(), CacheTTL.STATS, storage.get_market_overview
        )
    except Exception:
        logger.error("stats_query_failed", exc_info=True)
        return JSONResponse({"error": "Database query failed"}, status_code=500)

    return JSONResponse(response.to_dict())
