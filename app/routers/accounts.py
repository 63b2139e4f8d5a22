"""
Accounts router — the authenticated member's own account.

Endpoints:
  GET /accounts/me               — Account details
  GET /accounts/me/balance       — Cached balance checked against the ledger
  GET /accounts/me/transactions  — Ledger history (newest first)

There is no account id in these paths: the account is resolved from the
JWT, so a member can never name another member's account.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_account
from app.models.account import Account
from app.models.transaction import TransactionKind
from app.schemas.account import AccountResponse, BalanceResponse
from app.schemas.transaction import TransactionResponse
from app.services import ledger_service

router = APIRouter()


@router.get(
    "/me",
    response_model=AccountResponse,
    summary="Get own account",
)
async def get_my_account(
    account: Account = Depends(get_current_account),
):
    return account


@router.get(
    "/me/balance",
    response_model=BalanceResponse,
    summary="Get own balance with ledger check",
)
async def get_my_balance(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """
    Return the cached balance next to the balance replayed from the ledger.

    `is_valid` is False if they differ by a cent or more.
    """
    check = await ledger_service.check_balance(db, account.id)
    return BalanceResponse.model_validate(check)


@router.get(
    "/me/transactions",
    response_model=list[TransactionResponse],
    summary="List own ledger entries",
)
async def list_my_transactions(
    kind: TransactionKind | None = Query(None, description="Filter by transaction kind"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await ledger_service.list_transactions(
        db=db,
        account_id=account.id,
        kind_filter=kind,
        limit=limit,
        offset=offset,
    )
