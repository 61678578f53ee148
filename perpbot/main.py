"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from perpbot.config import Settings, settings as default_settings
from perpbot.database import create_db_and_tables
from perpbot.engine.runtime import Runtime, build_runtime
from perpbot.engine.scheduler import build_scheduler
from perpbot.utils.logging import setup_logging
from perpbot.api import bots, credentials, markets, positions, system, trades, webhook

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    runtime: Runtime | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """Build the app. Tests pass a prebuilt runtime and skip the scheduler."""
    settings = settings or (runtime.settings if runtime else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        setup_logging(settings.log_level)
        rt = runtime or build_runtime(settings)
        create_db_and_tables(rt.engine)
        app.state.runtime = rt

        scheduler = None
        if start_scheduler:
            # Reconcile once before accepting work so snapshots start from venue truth
            await rt.reconciler.reconcile_all()
            scheduler = build_scheduler(rt)
            scheduler.start()
        app.state.scheduler = scheduler
        logger.info("perpbot started")

        yield

        if scheduler is not None:
            scheduler.shutdown(wait=False)
        if runtime is None:
            await rt.aclose()
        logger.info("perpbot stopped")

    app = FastAPI(
        title="Perp Bot",
        description="TradingView webhook trading on Lighter DEX perpetuals",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount routers
    app.include_router(webhook.router)
    app.include_router(bots.router)
    app.include_router(credentials.router)
    app.include_router(trades.router)
    app.include_router(positions.router)
    app.include_router(system.router)
    app.include_router(markets.router)
    return app


app = create_app()
