"""
Operation service — lifecycle of automation jobs.

Every status write goes through set_status(), which consults the
transition table in app.models.operation and raises InvalidTransitionError
for anything undocumented. Writers:

  - the Automation Worker, via advance_operation()
  - the owning member, via select_package(), submit_captcha(),
    confirm_operation() and cancel_operation()
  - the liveness sweeps (app.services.liveness_service)

Terminating writes (cancel, worker abort) lock the operation row and
re-read its status before acting, and refund through
ledger_service.refund_operation(), which is idempotent. A cancel racing the
sweep therefore ends with exactly one REFUND no matter who commits first.

Heartbeats:
  Entering an interactive status opens a heartbeat window of
  HEARTBEAT_TTL_SECONDS. The client keeps it open with record_heartbeat();
  the sweep expires the operation once the window lapses.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.clock import as_utc, utcnow
from app.config import settings
from app.exceptions import (
    InvalidTransitionError,
    OperationNotCancellableError,
    OperationNotFoundError,
    OperationStateError,
    PackageNotFoundError,
    UnauthorizedAccessError,
)
from app.lock_store import LockStore, touch_heartbeat_quietly
from app.models.account import Account
from app.models.operation import (
    CANCELLABLE_STATUSES,
    INTERACTIVE_STATUSES,
    Operation,
    OperationStatus,
    can_transition,
)
from app.models.transaction import Transaction
from app.services import activity_service, ledger_service, notification_service

logger = logging.getLogger(__name__)

# Terminal statuses a worker may report other than COMPLETED; each one refunds
_WORKER_ABORTS = {
    OperationStatus.FAILED: (activity_service.OPERATION_FAILED, "failed"),
    OperationStatus.CANCELLED: (activity_service.OPERATION_CANCELLED, "was cancelled"),
    OperationStatus.EXPIRED: (activity_service.OPERATION_EXPIRED, "expired"),
}


@dataclass
class CancelResult:
    operation: Operation
    refund: Transaction | None
    previously_refunded: bool


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

async def _load_operation(
    db: AsyncSession,
    operation_id: uuid.UUID,
    for_update: bool = False,
) -> Operation:
    query = select(Operation).where(Operation.id == operation_id)
    if for_update:
        query = query.with_for_update()  # No-op on SQLite, locks row on PostgreSQL
    result = await db.execute(query)
    operation = result.scalar_one_or_none()
    if operation is None:
        raise OperationNotFoundError(operation_id)
    return operation


async def _get_owned_operation(
    db: AsyncSession,
    operation_id: uuid.UUID,
    account: Account,
    for_update: bool = False,
) -> Operation:
    """Load an operation and verify the caller's account is billed for it."""
    operation = await _load_operation(db, operation_id, for_update=for_update)
    if operation.account_id != account.id:
        raise UnauthorizedAccessError("You do not have access to this operation")
    return operation


def _open_heartbeat_window(operation: Operation, now: datetime) -> None:
    operation.last_heartbeat = now
    operation.heartbeat_expiry = now + timedelta(seconds=settings.HEARTBEAT_TTL_SECONDS)


def set_status(operation: Operation, target: OperationStatus, now: datetime) -> None:
    """
    Apply one status write after checking it against the transition table.

    Raises:
        InvalidTransitionError: If target is not reachable from the current status.
    """
    current = operation.status
    if not can_transition(current, target):
        raise InvalidTransitionError(operation.id, current.value, target.value)

    operation.status = target
    operation.updated_at = now
    if target in INTERACTIVE_STATUSES:
        _open_heartbeat_window(operation, now)
    logger.info("Operation %s: %s -> %s", operation.id, current.value, target.value)


def _require_status(operation: Operation, expected: OperationStatus, action: str) -> None:
    if operation.status != expected:
        raise OperationStateError(
            operation.id,
            operation.status.value,
            f"Cannot {action} while operation is {operation.status.value}",
        )


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

async def create_operation(
    db: AsyncSession,
    account: Account,
    type: str,
    amount_cents: int = 0,
    provider_account_id: str | None = None,
    customer_ref: str | None = None,
) -> Operation:
    """
    Create a PENDING operation and, if its cost is known, charge it.

    The charge and the operation row are written in the same unit of work.

    Raises:
        InsufficientFundsError: If the account cannot cover amount_cents.
    """
    locked = await ledger_service.lock_account(db, account.id) if amount_cents > 0 else account

    operation = Operation(
        account_id=account.id,
        customer_ref=customer_ref,
        type=type,
        amount_cents=amount_cents,
        status=OperationStatus.PENDING,
        provider_account_id=provider_account_id,
    )
    db.add(operation)
    await db.flush()

    if amount_cents > 0:
        await ledger_service.charge_operation(db, locked, operation, amount_cents)

    logger.info("Created %s operation %s for account %s", type, operation.id, account.id)
    return operation


# ---------------------------------------------------------------------------
# Worker progress
# ---------------------------------------------------------------------------

async def advance_operation(
    db: AsyncSession,
    operation_id: uuid.UUID,
    status: OperationStatus,
    packages: list[dict] | None = None,
    captcha_image: str | None = None,
    captcha_expiry: datetime | None = None,
    message: str | None = None,
    provider_account_id: str | None = None,
    now: datetime | None = None,
) -> Operation:
    """
    Apply an Automation Worker progress report.

    Artifacts are attached alongside the status write: the package list when
    entering AWAITING_PACKAGE, the challenge when entering AWAITING_CAPTCHA.
    A FAILED, CANCELLED or EXPIRED report refunds the operation
    (idempotently) and notifies the owner. COMPLETED records the result
    message.

    Raises:
        OperationNotFoundError: If the operation does not exist.
        InvalidTransitionError: If the reported status is not reachable.
    """
    now = now or utcnow()
    operation = await _load_operation(db, operation_id, for_update=True)
    set_status(operation, status, now)

    if provider_account_id:
        operation.provider_account_id = provider_account_id
    if packages is not None:
        operation.packages = packages
    if status == OperationStatus.AWAITING_CAPTCHA:
        operation.captcha_image = captcha_image
        operation.captcha_expiry = captcha_expiry
        operation.captcha_solution = None

    if status == OperationStatus.COMPLETED:
        operation.completed_at = now
        operation.result_message = message or "Operation completed"

    elif status in _WORKER_ABORTS:
        action, verb = _WORKER_ABORTS[status]
        reason = message or f"Operation {verb}"
        operation.completed_at = now
        operation.error_message = reason
        refund = await ledger_service.refund_operation(
            db, operation, notes=f"Automatic refund - {reason}", created_by="worker",
        )
        operation.result_message = (
            f"{reason} - refunded automatically" if refund else reason
        )
        if operation.account_id is not None:
            notification_service.notify(
                db,
                operation.account_id,
                title=f"Operation {verb}",
                message=(
                    f"Your operation {verb} and "
                    f"{ledger_service.format_cents(refund.amount_cents)} was refunded. "
                    f"Reason: {reason}"
                    if refund
                    else f"Your operation {verb}. Reason: {reason}"
                ),
                severity="error",
                link=notification_service.operation_link(operation.id),
            )
        activity_service.record(
            db,
            action,
            source="worker",
            account_id=operation.account_id,
            operation_id=operation.id,
            details={
                "reason": reason,
                "refunded_cents": refund.amount_cents if refund else 0,
            },
        )

    elif message:
        operation.result_message = message

    await db.flush()
    return operation


# ---------------------------------------------------------------------------
# Heartbeats
# ---------------------------------------------------------------------------

async def record_heartbeat(
    db: AsyncSession,
    lock_store: LockStore,
    operation_id: uuid.UUID,
    account: Account,
    now: datetime | None = None,
) -> Operation:
    """
    Keep an interactive operation's heartbeat window open.

    Idempotent: repeated calls only move the two timestamps forward. The
    heartbeat is also mirrored to the lock store so the worker can see it;
    that mirror is best-effort.

    Raises:
        OperationStateError: If the operation is not in an interactive status.
    """
    now = now or utcnow()
    operation = await _get_owned_operation(db, operation_id, account, for_update=True)
    if operation.status not in INTERACTIVE_STATUSES:
        raise OperationStateError(
            operation.id,
            operation.status.value,
            f"Heartbeats are not accepted while operation is {operation.status.value}",
        )

    _open_heartbeat_window(operation, now)
    await db.flush()

    await touch_heartbeat_quietly(
        lock_store,
        str(operation.id),
        {
            "timestamp": now.isoformat(),
            "status": operation.status.value,
            "provider_account_id": operation.provider_account_id,
        },
        settings.HEARTBEAT_TTL_SECONDS + 5,
    )
    return operation


async def get_heartbeat_status(
    db: AsyncSession,
    operation_id: uuid.UUID,
    account: Account,
    now: datetime | None = None,
) -> dict:
    now = now or utcnow()
    operation = await _get_owned_operation(db, operation_id, account)
    expiry = as_utc(operation.heartbeat_expiry)
    return {
        "operation_id": operation.id,
        "status": operation.status,
        "last_heartbeat": as_utc(operation.last_heartbeat),
        "heartbeat_expiry": expiry,
        "is_expired": expiry is not None and expiry < now,
        "requires_heartbeat": operation.status in INTERACTIVE_STATUSES,
    }


# ---------------------------------------------------------------------------
# Owner actions
# ---------------------------------------------------------------------------

async def cancel_operation(
    db: AsyncSession,
    operation_id: uuid.UUID,
    account: Account,
    now: datetime | None = None,
) -> CancelResult:
    """
    Cancel an operation on the owner's request.

    The refund is written before the status, in the same unit of work. If a
    refund already exists (e.g. the worker failed first and refunded) the
    cancel only writes the status and reports previously_refunded.

    Raises:
        OperationNotCancellableError: If the status is not cancellable,
            including every terminal status.
    """
    now = now or utcnow()
    operation = await _get_owned_operation(db, operation_id, account, for_update=True)
    if operation.status not in CANCELLABLE_STATUSES:
        raise OperationNotCancellableError(operation.id, operation.status.value)

    previous_status = operation.status
    previously_refunded = await ledger_service.has_refund(db, operation.id)
    refund = await ledger_service.refund_operation(
        db, operation, notes="Refund for cancelled operation", created_by="api",
    )

    set_status(operation, OperationStatus.CANCELLED, now)
    operation.completed_at = now
    operation.result_message = (
        "Cancelled by user - refunded" if refund else "Cancelled by user"
    )

    activity_service.record(
        db,
        activity_service.OPERATION_CANCELLED,
        source="api",
        account_id=account.id,
        operation_id=operation.id,
        details={
            "previous_status": previous_status.value,
            "refunded_cents": refund.amount_cents if refund else 0,
            "previously_refunded": previously_refunded,
        },
    )
    await db.flush()
    return CancelResult(
        operation=operation,
        refund=refund,
        previously_refunded=previously_refunded,
    )


async def select_package(
    db: AsyncSession,
    operation_id: uuid.UUID,
    account: Account,
    package_id: str,
    now: datetime | None = None,
) -> Operation:
    """
    Record the owner's package choice and hand the operation back to the worker.

    Operations created without a known cost are charged here, at the
    package price. An operation that was already charged keeps its amount.

    Raises:
        OperationStateError: If the operation is not AWAITING_PACKAGE.
        PackageNotFoundError: If package_id was not offered.
        InsufficientFundsError: If the account cannot cover the package.
    """
    now = now or utcnow()
    operation = await _get_owned_operation(db, operation_id, account, for_update=True)
    _require_status(operation, OperationStatus.AWAITING_PACKAGE, "select a package")

    package = next(
        (p for p in operation.packages or [] if str(p.get("id")) == str(package_id)),
        None,
    )
    if package is None:
        raise PackageNotFoundError(operation.id, package_id)

    operation.selected_package = package
    if not await ledger_service.has_charge(db, operation.id):
        price_cents = int(package.get("price_cents", 0))
        if price_cents > 0:
            locked = await ledger_service.lock_account(db, account.id)
            operation.amount_cents = price_cents
            await ledger_service.charge_operation(db, locked, operation, price_cents)

    set_status(operation, OperationStatus.COMPLETING, now)
    await db.flush()
    return operation


async def confirm_operation(
    db: AsyncSession,
    operation_id: uuid.UUID,
    account: Account,
    now: datetime | None = None,
) -> Operation:
    now = now or utcnow()
    operation = await _get_owned_operation(db, operation_id, account, for_update=True)
    _require_status(operation, OperationStatus.AWAITING_FINAL_CONFIRM, "confirm")
    set_status(operation, OperationStatus.COMPLETING, now)
    await db.flush()
    return operation


async def get_captcha(
    db: AsyncSession,
    operation_id: uuid.UUID,
    account: Account,
    now: datetime | None = None,
) -> tuple[str | None, int | None]:
    """Return the challenge image and the seconds left to solve it."""
    now = now or utcnow()
    operation = await _get_owned_operation(db, operation_id, account)
    _require_status(operation, OperationStatus.AWAITING_CAPTCHA, "read the captcha")

    expiry = as_utc(operation.captcha_expiry)
    expires_in = None
    if expiry is not None:
        expires_in = max(0, int((expiry - now).total_seconds()))
    return operation.captcha_image, expires_in


async def submit_captcha(
    db: AsyncSession,
    operation_id: uuid.UUID,
    account: Account,
    solution: str,
    now: datetime | None = None,
) -> Operation:
    """
    Store the owner's captcha solution for the worker to pick up.

    Raises:
        OperationStateError: If the operation is not AWAITING_CAPTCHA or
            the challenge has already expired.
    """
    now = now or utcnow()
    operation = await _get_owned_operation(db, operation_id, account, for_update=True)
    _require_status(operation, OperationStatus.AWAITING_CAPTCHA, "submit a captcha")

    expiry = as_utc(operation.captcha_expiry)
    if expiry is not None and expiry < now:
        raise OperationStateError(
            operation.id, operation.status.value, "Captcha has expired",
        )

    operation.captcha_solution = solution
    operation.updated_at = now
    await db.flush()
    return operation


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_operation(
    db: AsyncSession,
    operation_id: uuid.UUID,
    account: Account,
) -> Operation:
    return await _get_owned_operation(db, operation_id, account)


async def list_operations(
    db: AsyncSession,
    account_id: uuid.UUID,
    status_filter: OperationStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Operation]:
    """An account's operations, newest first."""
    query = (
        select(Operation)
        .where(Operation.account_id == account_id)
        .order_by(Operation.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    if status_filter:
        query = query.where(Operation.status == status_filter)

    result = await db.execute(query)
    return list(result.scalars().all())


async def admin_get_operation(db: AsyncSession, operation_id: uuid.UUID) -> Operation:
    """Get any operation without ownership check."""
    return await _load_operation(db, operation_id)


async def admin_list_operations(
    db: AsyncSession,
    status_filter: OperationStatus | None = None,
    account_id: uuid.UUID | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Operation]:
    """Every operation in the system, optionally narrowed by status or account."""
    query = (
        select(Operation)
        .order_by(Operation.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    if status_filter:
        query = query.where(Operation.status == status_filter)
    if account_id:
        query = query.where(Operation.account_id == account_id)

    result = await db.execute(query)
    return list(result.scalars().all())
