"""
Admin router — oversight, ledger effects and corrections.

All endpoints require ADMIN role.

Endpoints:
  GET  /admin/accounts                              — List all accounts
  GET  /admin/accounts/{account_id}                 — Any account's details
  GET  /admin/accounts/{account_id}/balance         — Ledger check
  GET  /admin/accounts/{account_id}/transactions    — Ledger history
  GET  /admin/accounts/{account_id}/anomalies       — Anomaly report
  GET  /admin/accounts/{account_id}/activity        — Audit trail
  POST /admin/accounts/{account_id}/deposits        — Record money paid in
  POST /admin/accounts/{account_id}/withdrawals     — Record money paid out
  POST /admin/accounts/{account_id}/corrections     — Apply a correction
  GET  /admin/operations                            — List all operations
  GET  /admin/operations/{operation_id}             — Any operation

Every write here goes through the ledger service and records the admin's
user id as `created_by`. Admins cannot start, drive or cancel operations.

By consolidating all admin routes in one router, we avoid route-ordering
conflicts with overlapping parameterized paths.
"""

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import require_admin
from app.models.operation import OperationStatus
from app.models.transaction import TransactionKind
from app.models.user import User
from app.schemas.account import AccountResponse, BalanceResponse, LedgerEntryRequest
from app.schemas.notification import ActivityLogResponse
from app.schemas.operation import OperationResponse
from app.schemas.reconciliation import (
    AnomalyReportResponse,
    CorrectionRequest,
    CorrectionResponse,
)
from app.schemas.transaction import TransactionResponse
from app.services import (
    account_service,
    activity_service,
    anomaly_service,
    correction_service,
    ledger_service,
    operation_service,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# Accounts and ledger
# ---------------------------------------------------------------------------

@router.get(
    "/accounts",
    response_model=list[AccountResponse],
    summary="[Admin] List all accounts",
)
async def admin_list_all_accounts(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await account_service.admin_get_all_accounts(db, limit=limit, offset=offset)


@router.get(
    "/accounts/{account_id}",
    response_model=AccountResponse,
    summary="[Admin] Get any account's details",
)
async def admin_get_account(
    account_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await account_service.admin_get_account(db, account_id)


@router.get(
    "/accounts/{account_id}/balance",
    response_model=BalanceResponse,
    summary="[Admin] Check any account's balance against its ledger",
)
async def admin_get_balance(
    account_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    check = await ledger_service.check_balance(db, account_id)
    return BalanceResponse.model_validate(check)


@router.get(
    "/accounts/{account_id}/transactions",
    response_model=list[TransactionResponse],
    summary="[Admin] List any account's ledger entries",
)
async def admin_list_account_transactions(
    account_id: uuid.UUID,
    kind: TransactionKind | None = Query(None, description="Filter by transaction kind"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await account_service.admin_get_account(db, account_id)
    return await ledger_service.list_transactions(
        db=db,
        account_id=account_id,
        kind_filter=kind,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/accounts/{account_id}/anomalies",
    response_model=AnomalyReportResponse,
    summary="[Admin] Detect ledger anomalies",
)
async def admin_get_anomalies(
    account_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Report double refunds, over refunds, refunds of uncharged operations
    and cached-balance mismatches. Read-only; nothing is changed.
    """
    report = await anomaly_service.get_anomaly_report(db, account_id)
    return AnomalyReportResponse.model_validate(report)


@router.get(
    "/accounts/{account_id}/activity",
    response_model=list[ActivityLogResponse],
    summary="[Admin] Audit trail for an account",
)
async def admin_list_activity(
    account_id: uuid.UUID,
    action: str | None = Query(None, description="Filter by action"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await account_service.admin_get_account(db, account_id)
    return await activity_service.list_activity(
        db=db,
        account_id=account_id,
        action=action,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/accounts/{account_id}/deposits",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="[Admin] Record a deposit",
)
async def admin_deposit(
    account_id: uuid.UUID,
    request: LedgerEntryRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Credit money received from a payment provider."""
    return await ledger_service.deposit(
        db=db,
        account_id=account_id,
        amount_cents=request.amount_cents,
        notes=request.notes,
        created_by=str(admin.id),
    )


@router.post(
    "/accounts/{account_id}/withdrawals",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="[Admin] Record a withdrawal",
)
async def admin_withdraw(
    account_id: uuid.UUID,
    request: LedgerEntryRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Debit money paid out. Rejected with 422 if it would overdraw the account."""
    return await ledger_service.withdraw(
        db=db,
        account_id=account_id,
        amount_cents=request.amount_cents,
        notes=request.notes,
        created_by=str(admin.id),
    )


@router.post(
    "/accounts/{account_id}/corrections",
    response_model=CorrectionResponse,
    summary="[Admin] Correct a ledger anomaly",
)
async def admin_correct(
    account_id: uuid.UUID,
    request: CorrectionRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Apply one correction atomically.

    - **INITIALIZE_BALANCE**: record unexplained excess as an opening deposit (balance unchanged)
    - **ADD_MISSING**: credit an unexplained shortfall
    - **BALANCE_MISMATCH**: deduct unexplained excess, never below zero
    - **DOUBLE_REFUND** / **OVER_REFUND**: claw back excess refunds of one
      operation (requires **operation_id**); each operation is corrected once

    Requests that find nothing to correct succeed with `corrected: false`.
    """
    result = await correction_service.correct(
        db=db,
        account_id=account_id,
        kind=request.kind,
        operation_id=request.operation_id,
        notes=request.notes,
        created_by=str(admin.id),
    )
    return CorrectionResponse.model_validate(result)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

@router.get(
    "/operations",
    response_model=list[OperationResponse],
    summary="[Admin] List all operations",
)
async def admin_list_operations(
    status: OperationStatus | None = Query(None, description="Filter by status"),
    account_id: uuid.UUID | None = Query(None, description="Filter by account"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await operation_service.admin_list_operations(
        db=db,
        status_filter=status,
        account_id=account_id,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/operations/{operation_id}",
    response_model=OperationResponse,
    summary="[Admin] Get any operation",
)
async def admin_get_operation(
    operation_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await operation_service.admin_get_operation(db, operation_id)
