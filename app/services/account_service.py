"""
Account service — account lookups for members and admins.

Members have exactly one billed account, created at signup; the
dependency layer resolves it from the JWT, so member routes never take an
account id and cannot name someone else's account.

Admin access:
  Admin-specific functions (prefixed with `admin_`) are not scoped to an
  owner. The router layer enforces that only ADMIN users can call them.
"""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import AccountNotFoundError
from app.models.account import Account


async def get_account_for_user(db: AsyncSession, user_id: uuid.UUID) -> Account:
    result = await db.execute(select(Account).where(Account.user_id == user_id))
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFoundError()
    return account


async def admin_get_all_accounts(
    db: AsyncSession,
    limit: int = 50,
    offset: int = 0,
) -> list[Account]:
    """List every account, oldest first."""
    result = await db.execute(
        select(Account)
        .order_by(Account.created_at)
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def admin_get_account(db: AsyncSession, account_id: uuid.UUID) -> Account:
    """Get any account's details without ownership check."""
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFoundError(account_id)
    return account
