"""
Cron router — scheduled sweeps.

  GET|POST /cron/cleanup-stuck-operations  — expire operations whose heartbeat lapsed
  GET|POST /cron/timeout-operations        — fail worker-driven operations that stalled

Authenticated with `Authorization: Bearer <CRON_SECRET>`; if CRON_SECRET is
not configured both endpoints answer 500 without touching anything.

The sweeps open their own session per operation from the session factory,
so these routes do not use the request-scoped session.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import get_session_factory
from app.dependencies import verify_cron_secret
from app.lock_store import LockStore, get_lock_store
from app.schemas.reconciliation import SweepSummaryResponse
from app.services import liveness_service

router = APIRouter(dependencies=[Depends(verify_cron_secret)])


@router.api_route(
    "/cleanup-stuck-operations",
    methods=["GET", "POST"],
    response_model=SweepSummaryResponse,
    summary="Expire operations with a lapsed heartbeat",
)
async def cleanup_stuck_operations(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    lock_store: LockStore = Depends(get_lock_store),
):
    summary = await liveness_service.expire_silent_operations(session_factory, lock_store)
    return SweepSummaryResponse.model_validate(summary)


@router.api_route(
    "/timeout-operations",
    methods=["GET", "POST"],
    response_model=SweepSummaryResponse,
    summary="Fail stalled PROCESSING/COMPLETING operations",
)
async def timeout_operations(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    lock_store: LockStore = Depends(get_lock_store),
):
    summary = await liveness_service.fail_stuck_operations(session_factory, lock_store)
    return SweepSummaryResponse.model_validate(summary)
