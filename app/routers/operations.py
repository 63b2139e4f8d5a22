"""
Operations router — member endpoints for starting and steering operations.

Endpoints (all scoped to the authenticated member's account):
  POST /operations                          — Start an operation
  GET  /operations                          — List own operations
  GET  /operations/{id}                     — Get one operation
  POST /operations/{id}/heartbeat           — Keep an interactive step alive
  GET  /operations/{id}/heartbeat           — Heartbeat window status
  POST /operations/{id}/cancel              — Cancel (refunds if charged)
  POST /operations/{id}/select-package      — Choose one of the offered packages
  POST /operations/{id}/confirm             — Final confirmation
  GET  /operations/{id}/captcha             — Read the captcha challenge
  POST /operations/{id}/captcha             — Submit the captcha solution

While an operation waits on the member (AWAITING_* statuses) the client
must POST a heartbeat at least every HEARTBEAT_TTL_SECONDS; otherwise the
cleanup sweep expires the operation and refunds it.
"""

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.clock import as_utc
from app.database import get_db
from app.dependencies import get_current_account
from app.lock_store import LockStore, get_lock_store, release_quietly, clear_heartbeat_quietly
from app.models.account import Account
from app.models.operation import OperationStatus
from app.schemas.operation import (
    CancelResponse,
    CaptchaResponse,
    CaptchaSubmitRequest,
    HeartbeatResponse,
    HeartbeatStatusResponse,
    OperationCreateRequest,
    OperationResponse,
    SelectPackageRequest,
)
from app.services import operation_service

router = APIRouter()


@router.post(
    "",
    response_model=OperationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start an operation",
)
async def create_operation(
    request: OperationCreateRequest,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a PENDING operation for the Automation Worker to pick up.

    If **amount_cents** is known up front it is charged immediately; the
    request is rejected with 422 if the balance cannot cover it. Otherwise
    the charge happens when a package is selected.
    """
    return await operation_service.create_operation(
        db=db,
        account=account,
        type=request.type,
        amount_cents=request.amount_cents,
        provider_account_id=request.provider_account_id,
        customer_ref=request.customer_ref,
    )


@router.get(
    "",
    response_model=list[OperationResponse],
    summary="List own operations",
)
async def list_operations(
    status: OperationStatus | None = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await operation_service.list_operations(
        db=db,
        account_id=account.id,
        status_filter=status,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/{operation_id}",
    response_model=OperationResponse,
    summary="Get an operation",
)
async def get_operation(
    operation_id: uuid.UUID,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await operation_service.get_operation(db, operation_id, account)


# ---------------------------------------------------------------------------
# Heartbeats
# ---------------------------------------------------------------------------

@router.post(
    "/{operation_id}/heartbeat",
    response_model=HeartbeatResponse,
    summary="Send a heartbeat",
)
async def send_heartbeat(
    operation_id: uuid.UUID,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    lock_store: LockStore = Depends(get_lock_store),
):
    """Extend the heartbeat window of an operation waiting on the member."""
    operation = await operation_service.record_heartbeat(
        db=db,
        lock_store=lock_store,
        operation_id=operation_id,
        account=account,
    )
    return HeartbeatResponse(
        operation_id=operation.id,
        status=operation.status,
        expires_at=as_utc(operation.heartbeat_expiry),
        ttl_seconds=settings.HEARTBEAT_TTL_SECONDS,
    )


@router.get(
    "/{operation_id}/heartbeat",
    response_model=HeartbeatStatusResponse,
    summary="Get heartbeat status",
)
async def get_heartbeat_status(
    operation_id: uuid.UUID,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await operation_service.get_heartbeat_status(db, operation_id, account)


# ---------------------------------------------------------------------------
# Owner actions
# ---------------------------------------------------------------------------

@router.post(
    "/{operation_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel an operation",
)
async def cancel_operation(
    operation_id: uuid.UUID,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    lock_store: LockStore = Depends(get_lock_store),
):
    """
    Cancel an operation that is PENDING or waiting on the member.

    A charged operation is refunded in the same transaction as the status
    change. If it was already refunded, only the status changes and
    `previously_refunded` is true.
    """
    result = await operation_service.cancel_operation(
        db=db,
        operation_id=operation_id,
        account=account,
    )
    await db.commit()

    await release_quietly(lock_store, result.operation.provider_account_id)
    await clear_heartbeat_quietly(lock_store, str(result.operation.id))

    return CancelResponse(
        operation=OperationResponse.model_validate(result.operation),
        refunded_cents=result.refund.amount_cents if result.refund else 0,
        previously_refunded=result.previously_refunded,
    )


@router.post(
    "/{operation_id}/select-package",
    response_model=OperationResponse,
    summary="Choose a package",
)
async def select_package(
    operation_id: uuid.UUID,
    request: SelectPackageRequest,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """
    Pick one of the packages offered in AWAITING_PACKAGE.

    Operations started without a known cost are charged the package price
    here (422 if the balance is too low).
    """
    return await operation_service.select_package(
        db=db,
        operation_id=operation_id,
        account=account,
        package_id=request.package_id,
    )


@router.post(
    "/{operation_id}/confirm",
    response_model=OperationResponse,
    summary="Confirm the final step",
)
async def confirm_operation(
    operation_id: uuid.UUID,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await operation_service.confirm_operation(db, operation_id, account)


@router.get(
    "/{operation_id}/captcha",
    response_model=CaptchaResponse,
    summary="Get the captcha challenge",
)
async def get_captcha(
    operation_id: uuid.UUID,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    image, expires_in = await operation_service.get_captcha(db, operation_id, account)
    return CaptchaResponse(
        operation_id=operation_id,
        captcha_image=image,
        expires_in=expires_in,
    )


@router.post(
    "/{operation_id}/captcha",
    response_model=OperationResponse,
    summary="Submit the captcha solution",
)
async def submit_captcha(
    operation_id: uuid.UUID,
    request: CaptchaSubmitRequest,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await operation_service.submit_captcha(
        db=db,
        operation_id=operation_id,
        account=account,
        solution=request.solution,
    )
