from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from artistsync.api.routes import artist_syncs, mentors
from artistsync.config import EngineSettings, configure_logging, load_settings
from artistsync.db.session import init_db
from artistsync.services.mentor_linker import MentorLinker
from artistsync.services.source_adapters import HttpSourceAdapter, SourceAdapter
from artistsync.services.sync_executor import SyncExecutor
from artistsync.services.sync_registry import SyncRegistry
from artistsync.services.sync_scheduler import SyncScheduler
from artistsync.services.sync_status import SyncStatusService

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[EngineSettings] = None,
    adapter: Optional[SourceAdapter] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    policy = settings.retry_policy()
    registry = SyncRegistry(settings.database_path)
    linker = MentorLinker(registry, clock=clock)
    executor = SyncExecutor(
        registry,
        adapter or HttpSourceAdapter.from_settings(settings),
        linker,
        attempt_timeout_seconds=settings.attempt_timeout_seconds,
        clock=clock,
    )
    scheduler = SyncScheduler(
        registry,
        executor,
        policy,
        tick_interval_seconds=settings.tick_interval_seconds,
        max_global_concurrency=settings.max_global_concurrency,
        max_per_source_concurrency=settings.max_per_source_concurrency,
        attempt_timeout_seconds=settings.attempt_timeout_seconds,
        clock=clock,
    )

    app = FastAPI(title="Artist Sync Engine")
    app.state.settings = settings
    app.state.retry_policy = policy
    app.state.registry = registry
    app.state.scheduler = scheduler
    app.state.status_service = SyncStatusService(registry, linker, clock=clock)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def on_startup() -> None:
        init_db(settings.database_path)
        if settings.scheduler_enabled:
            await scheduler.start()
        else:
            logger.info("Scheduler disabled; serving the status API only")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await scheduler.stop()

    app.include_router(artist_syncs.router)
    app.include_router(mentors.router)
    return app


app = create_app()
