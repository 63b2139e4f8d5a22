"""
Liveness service — the sweeps that force stuck operations to a terminal state.

expire_silent_operations():
  Interactive operations whose client stopped sending heartbeats (tab
  closed, connection lost) are expired and refunded. An operation is
  selected when it is in AWAITING_PACKAGE, AWAITING_FINAL_CONFIRM or
  AWAITING_CAPTCHA and either
    1. its heartbeat window has lapsed (heartbeat_expiry < now), or
    2. it never received a heartbeat and is older than the grace period.

fail_stuck_operations():
  Worker-driven operations (PROCESSING, COMPLETING) that have not been
  updated for longer than their timeout are marked FAILED and refunded.

Both sweeps are functions of (now, database, lock store) and keep no state
between runs, so the scheduler may fire them redundantly or overlap two
instances. Each selected operation is handled in its own session and
database transaction:

    lock row -> re-check eligibility -> status write -> refund (once)
             -> notification -> audit entry -> COMMIT
    then, outside the transaction:
             -> release provider-account lock -> delete heartbeat key

The re-check under the row lock is what makes overlapping runs and a
cancel racing the sweep safe: whoever commits second sees a terminal
status and skips. A failure in one operation's unit is logged and
recorded in the summary; the sweep carries on with the next one.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.clock import as_utc, utcnow
from app.config import settings
from app.lock_store import LockStore, clear_heartbeat_quietly, release_quietly
from app.models.operation import HEARTBEAT_MONITORED_STATUSES, Operation, OperationStatus
from app.services import (
    activity_service,
    ledger_service,
    notification_service,
    operation_service,
)

logger = logging.getLogger(__name__)

_EXPIRY_REASONS = {
    OperationStatus.AWAITING_PACKAGE: (
        "Package selection timed out - browser closed or connection lost"
    ),
    OperationStatus.AWAITING_FINAL_CONFIRM: (
        "Final confirmation timed out - browser closed or connection lost"
    ),
    OperationStatus.AWAITING_CAPTCHA: (
        "Captcha entry timed out - browser closed or connection lost"
    ),
}
_DEFAULT_EXPIRY_REASON = "Operation timed out - no heartbeat received from the browser"

_TIMEOUT_REASONS = {
    OperationStatus.PROCESSING: "Operation processing timed out",
    OperationStatus.COMPLETING: "Purchase completion timed out",
}

STUCK_STATUSES = frozenset(_TIMEOUT_REASONS)


@dataclass
class SweepSummary:
    processed: int = 0
    expired: int = 0
    refunded: int = 0
    locks_released: int = 0
    skipped: int = 0
    errors: int = 0
    failed_operation_ids: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class _Outcome:
    operation_id: uuid.UUID
    provider_account_id: str | None
    refunded_cents: int


# ---------------------------------------------------------------------------
# Eligibility (pure)
# ---------------------------------------------------------------------------

def is_heartbeat_lapsed(operation: Operation, now: datetime) -> bool:
    """True if an interactive operation should be expired at `now`."""
    if operation.status not in HEARTBEAT_MONITORED_STATUSES:
        return False

    expiry = as_utc(operation.heartbeat_expiry)
    if expiry is not None and expiry < now:
        return True

    grace_cutoff = now - timedelta(seconds=settings.HEARTBEAT_GRACE_PERIOD_SECONDS)
    return (
        operation.last_heartbeat is None
        and as_utc(operation.created_at) < grace_cutoff
    )


def _stuck_cutoff(status: OperationStatus, now: datetime) -> datetime:
    if status == OperationStatus.COMPLETING:
        return now - timedelta(minutes=settings.COMPLETING_TIMEOUT_MINUTES)
    return now - timedelta(minutes=settings.PROCESSING_TIMEOUT_MINUTES)


def is_stuck(operation: Operation, now: datetime) -> bool:
    """True if a worker-driven operation has made no progress for too long."""
    if operation.status not in STUCK_STATUSES:
        return False
    return as_utc(operation.updated_at) < _stuck_cutoff(operation.status, now)


# ---------------------------------------------------------------------------
# Per-operation units of work
# ---------------------------------------------------------------------------

async def _lock_operation(session: AsyncSession, operation_id: uuid.UUID) -> Operation | None:
    result = await session.execute(
        select(Operation)
        .where(Operation.id == operation_id)
        .with_for_update()  # No-op on SQLite, locks row on PostgreSQL
    )
    return result.scalar_one_or_none()


async def _expire_one(
    session: AsyncSession,
    operation_id: uuid.UUID,
    now: datetime,
) -> _Outcome | None:
    operation = await _lock_operation(session, operation_id)
    if operation is None or not is_heartbeat_lapsed(operation, now):
        return None

    previous_status = operation.status
    reason = _EXPIRY_REASONS.get(previous_status, _DEFAULT_EXPIRY_REASON)

    operation_service.set_status(operation, OperationStatus.EXPIRED, now)
    operation.error_message = reason
    operation.completed_at = now

    refund = await ledger_service.refund_operation(
        session, operation,
        notes=f"Automatic refund - {reason}",
        created_by="cleanup-sweep",
    )
    refunded_cents = refund.amount_cents if refund else 0
    operation.result_message = f"{reason} - refunded automatically" if refund else reason

    if operation.account_id is not None:
        notification_service.notify(
            session,
            operation.account_id,
            title="Operation timed out",
            message=(
                f"The operation was cancelled automatically and "
                f"{ledger_service.format_cents(refunded_cents)} was refunded. "
                f"Reason: {reason}"
                if refund
                else f"The operation was cancelled automatically. Reason: {reason}"
            ),
            severity="warning",
            link=notification_service.operation_link(operation.id),
        )

    last_heartbeat = as_utc(operation.last_heartbeat)
    heartbeat_expiry = as_utc(operation.heartbeat_expiry)
    activity_service.record(
        session,
        activity_service.OPERATION_EXPIRED_NO_HEARTBEAT,
        source="cleanup-sweep",
        account_id=operation.account_id,
        operation_id=operation.id,
        details={
            "operation_id": str(operation.id),
            "previous_status": previous_status.value,
            "last_heartbeat": last_heartbeat.isoformat() if last_heartbeat else None,
            "heartbeat_expiry": heartbeat_expiry.isoformat() if heartbeat_expiry else None,
            "refunded": refunded_cents,
            "reason": reason,
        },
    )

    logger.info(
        "Expired operation %s (was %s), refunded %s cents",
        operation.id, previous_status.value, refunded_cents,
    )
    return _Outcome(operation.id, operation.provider_account_id, refunded_cents)


async def _fail_one(
    session: AsyncSession,
    operation_id: uuid.UUID,
    now: datetime,
) -> _Outcome | None:
    operation = await _lock_operation(session, operation_id)
    if operation is None or not is_stuck(operation, now):
        return None

    previous_status = operation.status
    reason = _TIMEOUT_REASONS[previous_status]

    operation_service.set_status(operation, OperationStatus.FAILED, now)
    operation.error_message = reason
    operation.completed_at = now

    refund = await ledger_service.refund_operation(
        session, operation,
        notes=f"Automatic refund - {reason}",
        created_by="timeout-sweep",
    )
    refunded_cents = refund.amount_cents if refund else 0
    operation.result_message = f"{reason} - refunded automatically" if refund else reason

    if operation.account_id is not None:
        notification_service.notify(
            session,
            operation.account_id,
            title="Operation failed",
            message=(
                f"{reason}. {ledger_service.format_cents(refunded_cents)} was refunded."
                if refund
                else f"{reason}."
            ),
            severity="error",
            link=notification_service.operation_link(operation.id),
        )

    activity_service.record(
        session,
        activity_service.OPERATION_TIMEOUT,
        source="timeout-sweep",
        account_id=operation.account_id,
        operation_id=operation.id,
        details={
            "operation_id": str(operation.id),
            "previous_status": previous_status.value,
            "refunded": refunded_cents,
            "reason": reason,
        },
    )

    logger.info(
        "Failed stuck operation %s (was %s), refunded %s cents",
        operation.id, previous_status.value, refunded_cents,
    )
    return _Outcome(operation.id, operation.provider_account_id, refunded_cents)


# ---------------------------------------------------------------------------
# Sweep driver
# ---------------------------------------------------------------------------

async def _run_sweep(
    name: str,
    session_factory: async_sessionmaker[AsyncSession],
    lock_store: LockStore,
    candidate_ids: list[uuid.UUID],
    unit: Callable[[AsyncSession, uuid.UUID, datetime], Awaitable[_Outcome | None]],
    now: datetime,
) -> SweepSummary:
    summary = SweepSummary(processed=len(candidate_ids), timestamp=now)

    for operation_id in candidate_ids:
        try:
            async with session_factory() as session:
                async with session.begin():
                    outcome = await unit(session, operation_id, now)
        except Exception:
            logger.exception("%s failed for operation %s", name, operation_id)
            summary.errors += 1
            summary.failed_operation_ids.append(str(operation_id))
            continue

        if outcome is None:
            summary.skipped += 1
            continue

        summary.expired += 1
        if outcome.refunded_cents:
            summary.refunded += 1

        # Committed; lock store cleanup can no longer affect the refund
        if await release_quietly(lock_store, outcome.provider_account_id):
            summary.locks_released += 1
        await clear_heartbeat_quietly(lock_store, str(outcome.operation_id))

    logger.info(
        "%s: processed=%d expired=%d refunded=%d locks_released=%d skipped=%d errors=%d",
        name, summary.processed, summary.expired, summary.refunded,
        summary.locks_released, summary.skipped, summary.errors,
    )
    return summary


async def expire_silent_operations(
    session_factory: async_sessionmaker[AsyncSession],
    lock_store: LockStore,
    now: datetime | None = None,
) -> SweepSummary:
    """
    Expire interactive operations whose heartbeat lapsed.

    Args:
        session_factory: Source of one independent session per operation.
        lock_store: Where provider-account locks and heartbeat keys live.
        now: Evaluation time; defaults to the current UTC time.

    Returns:
        A SweepSummary for this run.
    """
    now = now or utcnow()
    grace_cutoff = now - timedelta(seconds=settings.HEARTBEAT_GRACE_PERIOD_SECONDS)

    async with session_factory() as session:
        result = await session.execute(
            select(Operation.id)
            .where(Operation.status.in_(list(HEARTBEAT_MONITORED_STATUSES)))
            .where(
                or_(
                    Operation.heartbeat_expiry < now,
                    and_(
                        Operation.last_heartbeat.is_(None),
                        Operation.created_at < grace_cutoff,
                    ),
                )
            )
            .order_by(Operation.created_at)
        )
        candidate_ids = list(result.scalars().all())

    return await _run_sweep(
        "Heartbeat sweep", session_factory, lock_store, candidate_ids, _expire_one, now,
    )


async def fail_stuck_operations(
    session_factory: async_sessionmaker[AsyncSession],
    lock_store: LockStore,
    now: datetime | None = None,
) -> SweepSummary:
    """Fail and refund PROCESSING/COMPLETING operations that stopped progressing."""
    now = now or utcnow()

    async with session_factory() as session:
        result = await session.execute(
            select(Operation.id)
            .where(
                or_(
                    and_(
                        Operation.status == OperationStatus.PROCESSING,
                        Operation.updated_at < _stuck_cutoff(OperationStatus.PROCESSING, now),
                    ),
                    and_(
                        Operation.status == OperationStatus.COMPLETING,
                        Operation.updated_at < _stuck_cutoff(OperationStatus.COMPLETING, now),
                    ),
                )
            )
            .order_by(Operation.created_at)
        )
        candidate_ids = list(result.scalars().all())

    return await _run_sweep(
        "Timeout sweep", session_factory, lock_store, candidate_ids, _fail_one, now,
    )
