"""SYNCWARD — FastAPI Application Entry Point.

Gap detection and backfill engine for daily ad-platform time series.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from syncward.database import engine as db_engine, init_db, test_connection, db_url, _mask_url
from syncward.engine.orchestrator import BackfillEngine
from syncward.scheduler.jobs import start_scheduler, stop_scheduler
from syncward.api.sync_routes import router as sync_router
from syncward.api.connection_routes import router as connection_router
from syncward.core.logging import get_logger

logger = get_logger("main")


IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("🚀 SYNCWARD starting up...")
    logger.info(f"🌍 Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")
    db_ok = test_connection()
    if db_ok:
        init_db()
    else:
        logger.error("❌ Database NOT connected — endpoints will fail")

    backfill_engine = BackfillEngine(db_engine)
    app.state.backfill_engine = backfill_engine
    if db_ok:
        backfill_engine.ledger.recover_interrupted_runs()

    if not IS_SERVERLESS:
        start_scheduler(backfill_engine)
    yield
    if not IS_SERVERLESS:
        stop_scheduler()
    await backfill_engine.shutdown()
    logger.info("SYNCWARD shut down")


app = FastAPI(
    title="SYNCWARD",
    description="Keep daily ad-platform time series complete: detect missing days, backfill them under upstream rate limits, and roll them up.",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(sync_router)
app.include_router(connection_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    engine = getattr(app.state, "backfill_engine", None)
    return {
        "status": "healthy",
        "service": "syncward",
        "version": "1.0.0",
        "tenant_pools": engine.pools.snapshot() if engine else [],
    }


@app.get("/debug/db", tags=["System"])
async def debug_db():
    """Debug endpoint — check database connectivity."""
    backend = "postgresql" if db_url.startswith("postgresql") else "sqlite"
    return {
        "connected": test_connection(),
        "backend": backend,
        "url": _mask_url(db_url),
        "environment": "serverless" if IS_SERVERLESS else "local",
    }
