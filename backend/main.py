"""Call progress engine — FastAPI backend.

Entry point for the backend server.  Configures structured logging,
sets up the APScheduler for periodic refresh sweeps and corruption
audits, includes all API routers, and exposes the health endpoint.

Start with:
    uvicorn main:app --host 0.0.0.0 --port 8000
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from config import settings
from models.database import get_supabase
from models.schemas import HealthResponse
from routers import admin, calls, refresh
from services.refresh_progress import last_refresh_at
from services.scheduler import configure_scheduler, get_next_refresh_time, scheduler

# ── Structured logging ──────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


# ── Application lifespan ────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage startup and shutdown of background services.

    On startup:
      1. Verify the Supabase database connection.
      2. Configure and start the APScheduler.

    On shutdown:
      1. Gracefully shut down the scheduler.
    """
    logger.info("Starting call progress backend")

    try:
        db = get_supabase()
        db.table("calls").select("id").limit(1).execute()
        logger.info("Database connection verified")
    except Exception:
        logger.exception(
            "Database connection failed — the app will start but refreshes will fail"
        )

    if not settings.market_data_api_key:
        logger.warning("MARKET_DATA_API_KEY not set — market data requests will fail")

    try:
        configure_scheduler()
        scheduler.start()
        logger.info("Scheduler started")
    except Exception:
        logger.exception("Scheduler failed to start")

    yield

    logger.info("Shutting down call progress backend")
    try:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    except Exception:
        logger.exception("Error shutting down scheduler")


# ── FastAPI app ─────────────────────────────────────────────────────

app = FastAPI(
    title="Call Progress Engine",
    description="Peak resolution and milestone locking for token calls",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Routers ─────────────────────────────────────────────────────────

app.include_router(refresh.router)
app.include_router(calls.router)
app.include_router(admin.router)


# ── Root-level endpoints ────────────────────────────────────────────


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Backend health check.

    Returns:
      - Database connection status.
      - Start time of the most recent refresh sweep.
      - Next scheduled sweep.
    """
    db_connected = False
    try:
        db = get_supabase()
        db.table("calls").select("id").limit(1).execute()
        db_connected = True
    except Exception:
        logger.exception("Health check: database query failed")

    return HealthResponse(
        status="ok" if db_connected else "degraded",
        database_connected=db_connected,
        last_refresh_at=last_refresh_at(),
        next_refresh_at=get_next_refresh_time(),
    )
