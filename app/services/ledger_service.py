"""
Ledger service — the only code path that changes an account's balance.

THIS IS THE MOST CRITICAL FILE IN THE PROJECT. It handles:
  - Applying balance-affecting entries (deposit, operation charge, refund,
    withdrawal, correction)
  - Recording a pre-ledger opening balance without moving the cache
  - The idempotent operation refund used by cancel, fail and expiry paths
  - The pure expected-balance replay and the cache-vs-ledger check

Atomicity:
  Every balance change and its Transaction row are written by
  apply_entry() inside the caller's unit of work. If either fails, both
  are rolled back. No other module assigns Account.balance_cents; that
  pairing is what makes reconciliation possible.

Serialization:
  Callers lock the account row first with lock_account(), which issues
  SELECT ... FOR UPDATE. Two concurrent corrections against the same
  account therefore cannot both read the same stale balance.

SQLite note:
  SQLite doesn't support SELECT ... FOR UPDATE. The with_for_update() calls
  are no-ops there but position the code correctly for PostgreSQL; SQLite
  serializes writers at the database level instead.
"""

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import AccountNotFoundError, InsufficientFundsError
from app.models.account import Account
from app.models.operation import Operation
from app.models.transaction import Transaction, TransactionKind

logger = logging.getLogger(__name__)

# One cent: the ledger is valid iff |cached - expected| < BALANCE_EPSILON_CENTS
BALANCE_EPSILON_CENTS = 1

_POSITIVE_KINDS = {TransactionKind.DEPOSIT, TransactionKind.REFUND}
_NEGATIVE_KINDS = {TransactionKind.OPERATION_DEDUCT, TransactionKind.WITHDRAW}


def format_cents(amount_cents: int) -> str:
    """Render cents as a dollar string, e.g. 2000 -> '$20.00', -150 -> '-$1.50'."""
    sign = "-" if amount_cents < 0 else ""
    whole, cents = divmod(abs(amount_cents), 100)
    return f"{sign}${whole}.{cents:02d}"


# ---------------------------------------------------------------------------
# Expected-balance replay (pure)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BalanceCheck:
    """Cached balance compared against the ledger replay."""
    account_id: uuid.UUID
    cached_balance_cents: int
    expected_balance_cents: int
    total_deposits_cents: int
    total_deductions_cents: int
    total_refunds_cents: int
    total_withdrawals_cents: int
    total_corrections_cents: int
    currency: str = "USD"

    @property
    def discrepancy_cents(self) -> int:
        # Positive: the account holds more than the ledger explains
        return self.cached_balance_cents - self.expected_balance_cents

    @property
    def is_valid(self) -> bool:
        return abs(self.discrepancy_cents) < BALANCE_EPSILON_CENTS


def summarize_transactions(transactions: Iterable[Transaction]) -> dict[str, int]:
    """Per-kind totals. Deductions and withdrawals are returned as magnitudes."""
    totals = {
        "deposits": 0,
        "deductions": 0,
        "refunds": 0,
        "withdrawals": 0,
        "corrections": 0,
    }
    for txn in transactions:
        if txn.kind == TransactionKind.DEPOSIT:
            totals["deposits"] += txn.amount_cents
        elif txn.kind == TransactionKind.OPERATION_DEDUCT:
            totals["deductions"] += abs(txn.amount_cents)
        elif txn.kind == TransactionKind.REFUND:
            totals["refunds"] += txn.amount_cents
        elif txn.kind == TransactionKind.WITHDRAW:
            totals["withdrawals"] += abs(txn.amount_cents)
        elif txn.kind == TransactionKind.CORRECTION:
            totals["corrections"] += txn.amount_cents
    return totals


def compute_expected_balance(transactions: Iterable[Transaction]) -> int:
    """
    Replay an account's ledger:

        Σ DEPOSIT − Σ|OPERATION_DEDUCT| + Σ REFUND − Σ|WITHDRAW| + Σ CORRECTION
    """
    totals = summarize_transactions(transactions)
    return (
        totals["deposits"]
        - totals["deductions"]
        + totals["refunds"]
        - totals["withdrawals"]
        + totals["corrections"]
    )


def build_balance_check(account: Account, transactions: list[Transaction]) -> BalanceCheck:
    totals = summarize_transactions(transactions)
    return BalanceCheck(
        account_id=account.id,
        cached_balance_cents=account.balance_cents,
        expected_balance_cents=compute_expected_balance(transactions),
        total_deposits_cents=totals["deposits"],
        total_deductions_cents=totals["deductions"],
        total_refunds_cents=totals["refunds"],
        total_withdrawals_cents=totals["withdrawals"],
        total_corrections_cents=totals["corrections"],
        currency=account.currency,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_account_transactions(
    db: AsyncSession,
    account_id: uuid.UUID,
) -> list[Transaction]:
    """Full ledger for an account in creation order."""
    result = await db.execute(
        select(Transaction)
        .where(Transaction.account_id == account_id)
        .order_by(Transaction.created_at)
    )
    return list(result.scalars().all())


async def check_balance(db: AsyncSession, account_id: uuid.UUID) -> BalanceCheck:
    """Recompute the expected balance from scratch and compare it to the cache."""
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFoundError(account_id)

    transactions = await get_account_transactions(db, account_id)
    return build_balance_check(account, transactions)


async def list_transactions(
    db: AsyncSession,
    account_id: uuid.UUID,
    kind_filter: TransactionKind | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Transaction]:
    """Paginated history, newest first."""
    query = (
        select(Transaction)
        .where(Transaction.account_id == account_id)
        .order_by(Transaction.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    if kind_filter:
        query = query.where(Transaction.kind == kind_filter)

    result = await db.execute(query)
    return list(result.scalars().all())


async def get_refunds_for_operation(
    db: AsyncSession,
    operation_id: uuid.UUID,
) -> list[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.operation_id == operation_id)
        .where(Transaction.kind == TransactionKind.REFUND)
    )
    return list(result.scalars().all())


async def has_refund(db: AsyncSession, operation_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(Transaction.id)
        .where(Transaction.operation_id == operation_id)
        .where(Transaction.kind == TransactionKind.REFUND)
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def has_charge(db: AsyncSession, operation_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(Transaction.id)
        .where(Transaction.operation_id == operation_id)
        .where(Transaction.kind == TransactionKind.OPERATION_DEDUCT)
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

async def lock_account(db: AsyncSession, account_id: uuid.UUID) -> Account:
    """Load the account row for update; the start of every balance change."""
    result = await db.execute(
        select(Account)
        .where(Account.id == account_id)
        .with_for_update()  # No-op on SQLite, locks row on PostgreSQL
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFoundError(account_id)
    return account


async def apply_entry(
    db: AsyncSession,
    account: Account,
    kind: TransactionKind,
    amount_cents: int,
    operation_id: uuid.UUID | None = None,
    notes: str | None = None,
    created_by: str = "system",
) -> Transaction:
    """
    Apply one signed ledger entry to a locked account.

    Updates the cached balance and appends exactly one Transaction carrying
    the resulting balance. The caller owns the unit of work and commits.

    Raises:
        ValueError: If the amount is zero or its sign contradicts the kind.
    """
    if amount_cents == 0:
        raise ValueError("Ledger entries must move a non-zero amount")
    if kind in _POSITIVE_KINDS and amount_cents < 0:
        raise ValueError(f"{kind.value} entries must be positive")
    if kind in _NEGATIVE_KINDS and amount_cents > 0:
        raise ValueError(f"{kind.value} entries must be negative")

    account.balance_cents += amount_cents
    txn = Transaction(
        account_id=account.id,
        kind=kind,
        amount_cents=amount_cents,
        balance_after_cents=account.balance_cents,
        operation_id=operation_id,
        notes=notes,
        created_by=created_by,
    )
    db.add(txn)
    await db.flush()
    return txn


async def deposit(
    db: AsyncSession,
    account_id: uuid.UUID,
    amount_cents: int,
    notes: str | None = None,
    created_by: str = "system",
) -> Transaction:
    """Credit money paid in (payment webhook or admin top-up)."""
    account = await lock_account(db, account_id)
    return await apply_entry(
        db, account, TransactionKind.DEPOSIT, amount_cents,
        notes=notes, created_by=created_by,
    )


async def withdraw(
    db: AsyncSession,
    account_id: uuid.UUID,
    amount_cents: int,
    notes: str | None = None,
    created_by: str = "system",
) -> Transaction:
    """Debit money paid out. Refuses to overdraw the account."""
    account = await lock_account(db, account_id)
    if account.balance_cents < amount_cents:
        raise InsufficientFundsError(
            account_id=account_id,
            requested_cents=amount_cents,
            available_cents=account.balance_cents,
        )
    return await apply_entry(
        db, account, TransactionKind.WITHDRAW, -amount_cents,
        notes=notes, created_by=created_by,
    )


async def charge_operation(
    db: AsyncSession,
    account: Account,
    operation: Operation,
    amount_cents: int,
    created_by: str = "system",
) -> Transaction:
    """
    Reserve an operation's cost from a locked account.

    Raises:
        InsufficientFundsError: If the cached balance cannot cover the charge.
    """
    if account.balance_cents < amount_cents:
        raise InsufficientFundsError(
            account_id=account.id,
            requested_cents=amount_cents,
            available_cents=account.balance_cents,
        )
    return await apply_entry(
        db, account, TransactionKind.OPERATION_DEDUCT, -amount_cents,
        operation_id=operation.id,
        notes=f"Charge for {operation.type} operation",
        created_by=created_by,
    )


async def refund_operation(
    db: AsyncSession,
    operation: Operation,
    notes: str,
    created_by: str = "system",
) -> Transaction | None:
    """
    Return an operation's charge to its account, at most once.

    The existing-refund check runs inside the caller's unit of work, after
    the operation row has been locked, so concurrent cancel/fail/expire
    paths cannot both pass it.

    Returns:
        The new REFUND transaction, or None when nothing was refunded
        (zero amount, no billed account, or a refund already exists).
    """
    if operation.amount_cents <= 0 or operation.account_id is None:
        return None

    if await has_refund(db, operation.id):
        logger.info("Refund already exists for operation %s, skipping", operation.id)
        return None

    account = await lock_account(db, operation.account_id)
    txn = await apply_entry(
        db, account, TransactionKind.REFUND, operation.amount_cents,
        operation_id=operation.id,
        notes=notes,
        created_by=created_by,
    )
    logger.info(
        "Refunded %s to account %s for operation %s",
        operation.amount_cents, account.id, operation.id,
    )
    return txn


async def record_opening_balance(
    db: AsyncSession,
    account: Account,
    amount_cents: int,
    notes: str = "Initial Balance",
    created_by: str = "system",
) -> Transaction:
    """
    Explain a balance that predates the ledger with a DEPOSIT row.

    The cached balance already holds this money, so it is left unchanged;
    only the ledger catches up. The account must be locked by the caller.
    """
    if amount_cents <= 0:
        raise ValueError("Opening balances must be positive")

    txn = Transaction(
        account_id=account.id,
        kind=TransactionKind.DEPOSIT,
        amount_cents=amount_cents,
        balance_after_cents=account.balance_cents,
        notes=notes,
        created_by=created_by,
    )
    db.add(txn)
    await db.flush()
    return txn
