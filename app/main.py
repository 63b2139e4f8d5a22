"""
FastAPI application factory and entry point.

This module creates and configures the FastAPI application:
  1. Logging — configured once from LOG_LEVEL
  2. Lifespan manager — table creation, optional in-process sweep loop
  3. CORS middleware — allows frontend origins to make cross-origin requests
  4. Exception handlers — maps domain errors to HTTP responses
  5. Router registration — mounts all API endpoint groups

Running locally:
    uvicorn app.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app import models  # noqa: F401  (registers every table on Base.metadata)
from app.config import settings
from app.database import engine, Base, AsyncSessionLocal
from app.exceptions import register_exception_handlers
from app.lock_store import close_lock_store, get_lock_store
from app.routers import accounts, admin, auth, cron, notifications, operations, worker
from app.scheduler import SweepScheduler

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
      Creates all database tables if they don't exist (use migrations in
      production), then starts the sweep loop if RUN_SWEEP_IN_PROCESS.

    Shutdown:
      Stops the loop, closes the Redis client and disposes of the
      database engine.
    """
    # --- Startup ---
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    scheduler = None
    if settings.RUN_SWEEP_IN_PROCESS:
        scheduler = SweepScheduler(AsyncSessionLocal, get_lock_store())
        scheduler.start()

    yield

    # --- Shutdown ---
    if scheduler is not None:
        await scheduler.stop()
    await close_lock_store()
    await engine.dispose()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Operation lifecycle and ledger reconciliation API",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

register_exception_handlers(app)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(auth.router, prefix="/auth", tags=["Auth"])
app.include_router(accounts.router, prefix="/accounts", tags=["Accounts"])
app.include_router(notifications.router, prefix="/notifications", tags=["Notifications"])
app.include_router(operations.router, prefix="/operations", tags=["Operations"])
app.include_router(worker.router, prefix="/worker", tags=["Worker"])
app.include_router(cron.router, prefix="/cron", tags=["Cron"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health_check():
    """Liveness probe for load balancers and orchestrators."""
    return {"status": "ok", "version": settings.APP_VERSION}
