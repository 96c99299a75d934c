"""Board Metrics FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from boardmetrics import config
from boardmetrics.models import ConfigView
from boardmetrics.routers.items import items_router
from boardmetrics.routers.sync import sync_router

from boardmetrics.db import connection, migrations, sync_engine
from boardmetrics.db.poller import sync_poller
from boardmetrics.sources.azdo import AzdoClient, AzdoSettings
from boardmetrics.observability import initialize as initialize_observability, shutdown as shutdown_observability

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("boardmetrics")


def _mask_secret(value: str) -> str:
    if not value:
        return ""
    if len(value) <= 4:
        return "****"
    return "****" + value[-4:]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Board Metrics backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Initialize tracker client + Sync Engine
    source = AzdoClient(AzdoSettings.from_config())
    sync = sync_engine.SyncEngine(db, source)
    app.state.source = source
    app.state.sync_engine = sync

    # 4. Start the interval poller (first pass after the startup delay)
    if config.POLLER_ENABLED:
        await sync_poller.start(
            sync,
            interval_seconds=config.POLL_INTERVAL_SECONDS,
            startup_delay=config.STARTUP_SYNC_DELAY_SECONDS,
        )
    else:
        logger.info("Sync poller disabled; use POST /api/sync to refresh")

    yield

    logger.info("Board Metrics backend shutting down")

    await sync_poller.stop()
    await source.aclose()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="Board Metrics API",
    description="Scheduling metrics and triage flags for tracked work items",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(items_router)
app.include_router(sync_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "poller": "running" if sync_poller.is_running else "stopped",
    }


@app.get("/api/config", response_model=ConfigView)
def get_config():
    """Effective configuration with the access token masked."""
    return ConfigView(
        orgUrl=config.AZDO_ORG_URL,
        project=config.AZDO_PROJECT,
        pat=_mask_secret(config.AZDO_PAT),
        configured=bool(config.AZDO_ORG_URL and config.AZDO_PROJECT and config.AZDO_PAT),
        effortField=config.AZDO_EFFORT_FIELD,
        dueDateField=config.AZDO_DUE_DATE_FIELD,
        users=list(config.AZDO_USERS),
        metrics={
            "startStates": list(config.START_STATES),
            "inProgressStates": list(config.IN_PROGRESS_STATES),
            "doneStates": list(config.DONE_STATES),
            "effortPerDay": config.EFFORT_PER_DAY,
            "expectedDaysRounding": config.EXPECTED_DAYS_ROUNDING,
            "useBusinessDays": config.USE_BUSINESS_DAYS,
        },
        triage={
            "commitmentLateDays": config.COMMITMENT_LATE_DAYS,
            "forecastLateDays": config.FORECAST_LATE_DAYS,
            "maxPlanningLagDays": config.MAX_PLANNING_LAG_DAYS,
        },
        sync={
            "pollIntervalSeconds": config.POLL_INTERVAL_SECONDS,
            "initialLookbackDays": config.INITIAL_LOOKBACK_DAYS,
            "watermarkOverlapSeconds": config.WATERMARK_OVERLAP_SECONDS,
            "batchSize": config.BATCH_SIZE,
        },
    )


@app.get("/api/assignees")
def get_assignees():
    """Configured assignee allow-list; empty means every assignee is tracked."""
    return {"users": list(config.AZDO_USERS), "count": len(config.AZDO_USERS)}


def run() -> None:
    """Serve the API with uvicorn using the configured host and port."""
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
