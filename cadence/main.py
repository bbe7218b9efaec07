"""Cadence: FastAPI Application Entry Point.

Metric sync & anomaly detection service.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cadence.database import init_db, test_connection, db_url, _mask_url
from cadence.scheduler.jobs import start_scheduler, stop_scheduler
from cadence.api.sync_routes import router as sync_router
from cadence.api.metric_routes import router as metric_router
from cadence.api.anomaly_routes import router as anomaly_router
from cadence.core.logging import get_logger

logger = get_logger("main")

VERSION = "1.0.0"

IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("Cadence starting up...")
    logger.info(f"Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")
    if test_connection():
        init_db()
    else:
        logger.error("Database NOT connected; endpoints will fail")
    # Serverless deployments trigger POST /sync/run from an external cron
    if not IS_SERVERLESS:
        start_scheduler()
    yield
    if not IS_SERVERLESS:
        stop_scheduler()
    logger.info("Cadence shut down")


app = FastAPI(
    title="Cadence",
    description="Sync scorecard metrics from HubSpot and BigQuery, compute calculated and rollup metrics, and flag anomalies.",
    version=VERSION,
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
app.include_router(metric_router)
app.include_router(anomaly_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    backend = "postgresql" if db_url.startswith("postgresql") else "sqlite"
    return {
        "status": "healthy",
        "service": "cadence",
        "version": VERSION,
        "database": {"backend": backend, "url": _mask_url(db_url)},
    }
