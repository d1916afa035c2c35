"""FastAPI application factory with background sync and enrichment schedulers."""

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from hdb_insights.config import Settings
from hdb_insights.db import MarketStorage
from hdb_insights.errors import SyncAlreadyRunningError
from hdb_insights.logging import configure_logging, get_logger
from hdb_insights.sync import SyncOrchestrator

logger = get_logger(__name__)

SCHEDULER_INITIAL_DELAY_SECONDS = 30


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


async def _schedule_loop(
    name: str,
    job: Callable[[], Awaitable[Any]],
    interval_minutes: int,
    *,
    initial_delay: float = SCHEDULER_INITIAL_DELAY_SECONDS,
) -> None:
    """Run ``job`` on a recurring schedule until cancelled."""
    # Initial delay so the web server can become responsive first
    logger.info("scheduler_initial_delay", job=name, seconds=initial_delay)
    await asyncio.sleep(initial_delay)

    while True:
        logger.info("scheduler_running", job=name)
        try:
            await job()
        except SyncAlreadyRunningError:
            logger.info("scheduler_skipped_overlap", job=name)
        except Exception:
            logger.error("scheduler_error", job=name, exc_info=True)
        logger.info("scheduler_sleeping", job=name, minutes=interval_minutes)
        await asyncio.sleep(interval_minutes * 60)


def create_app(settings: Settings | None = None, *, run_scheduler: bool = True) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Application settings. Loaded from env if not provided.
        run_scheduler: Whether to start the background sync/enrichment loops.
    """
    if settings is None:
        settings = Settings()

    configure_logging(json_output=False)

    storage = MarketStorage(settings.database_path)
    tasks: list[asyncio.Task[None]] = []

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await storage.initialize()
        orchestrator = SyncOrchestrator.from_settings(settings, storage)
        app.state.storage = storage
        app.state.settings = settings
        app.state.orchestrator = orchestrator

        if run_scheduler:
            tasks.append(
                asyncio.create_task(
                    _schedule_loop("sync", orchestrator.run_sync, settings.sync_interval_minutes)
                )
            )
            tasks.append(
                asyncio.create_task(
                    _schedule_loop(
                        "enrichment",
                        orchestrator.run_enrichment,
                        settings.enrich_interval_minutes,
                    )
                )
            )
            logger.info(
                "web_server_started",
                sync_interval=settings.sync_interval_minutes,
                enrich_interval=settings.enrich_interval_minutes,
            )
        else:
            logger.info("web_server_started", scheduler="disabled")

        yield

        # Shutdown
        for task in tasks:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        tasks.clear()
        await orchestrator.close()
        await storage.close()
        logger.info("web_server_stopped")

    app = FastAPI(title="HDB Insights", lifespan=lifespan)

    # Security headers
    app.add_middleware(SecurityHeadersMiddleware)

    # Register routes
    from hdb_insights.web.routes import router

    app.include_router(router)

    return app
