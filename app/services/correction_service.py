"""
Correction service — explicit, audited fixes for detected ledger anomalies.

Every correction runs in the caller's unit of work and locks the account
row, then recomputes the expected balance from the ledger under that lock.
Two concurrent corrections therefore cannot both apply against the same
stale discrepancy. Refund corrections lock the operation row first, in the
same operation-then-account order as cancel, select_package and the sweeps.

Balance kinds act only on a discrepancy beyond BALANCE_EPSILON_CENTS; a
discrepancy of exactly one cent is left alone.

Correction kinds:

  INITIALIZE_BALANCE  cached > expected: record the excess as a DEPOSIT
                      (balances that predate the ledger). The
                      cached balance is left as it is.
  ADD_MISSING         cached < expected: positive CORRECTION of the gap.
  BALANCE_MISMATCH    cached > expected: negative CORRECTION, capped at the
                      current balance so it never goes below zero. A short
                      balance is refused with a pointer to ADD_MISSING.
  DOUBLE_REFUND /     negative CORRECTION of (refunds - amount) for one
  OVER_REFUND         operation, which is then flagged `corrected` so the
                      same excess is never deducted twice.

No-ops are successful results with corrected=False and a message saying
why nothing was done; they are not errors.
"""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.clock import utcnow
from app.exceptions import CorrectionRequestError, OperationNotFoundError
from app.models.operation import Operation
from app.models.transaction import TransactionKind
from app.services import activity_service, ledger_service

logger = logging.getLogger(__name__)


class CorrectionKind(str, Enum):
    BALANCE_MISMATCH = "BALANCE_MISMATCH"
    DOUBLE_REFUND = "DOUBLE_REFUND"
    OVER_REFUND = "OVER_REFUND"
    INITIALIZE_BALANCE = "INITIALIZE_BALANCE"
    ADD_MISSING = "ADD_MISSING"


@dataclass
class CorrectionResult:
    success: bool
    message: str
    corrected: bool = False
    already_corrected: bool = False
    needs_manual_review: bool = False
    suggested_action: CorrectionKind | None = None
    discrepancy_cents: int | None = None
    shortfall_cents: int | None = None
    correction_amount_cents: int | None = None
    new_balance_cents: int | None = None
    transaction_id: uuid.UUID | None = None


def _noop(message: str, **extra) -> CorrectionResult:
    return CorrectionResult(success=True, message=message, corrected=False, **extra)


async def correct(
    db: AsyncSession,
    account_id: uuid.UUID,
    kind: CorrectionKind,
    operation_id: uuid.UUID | None = None,
    notes: str | None = None,
    created_by: str = "system",
) -> CorrectionResult:
    """
    Apply one correction to an account.

    Args:
        db: Database session; the caller commits.
        account_id: The account to correct.
        kind: Which anomaly is being corrected.
        operation_id: Required for DOUBLE_REFUND and OVER_REFUND.
        notes: Overrides the generated transaction notes.
        created_by: Recorded on the transaction and the audit entry.

    Returns:
        CorrectionResult describing what was done, or why nothing was.

    Raises:
        AccountNotFoundError: If the account does not exist.
        CorrectionRequestError: If a refund correction lacks operation_id.
        OperationNotFoundError: If the operation does not belong to the account.
    """
    amount_cents = 0
    entry_notes = ""
    operation: Operation | None = None
    shortfall_cents: int | None = None
    refund_kind = kind in (CorrectionKind.DOUBLE_REFUND, CorrectionKind.OVER_REFUND)

    # Operation row before account row, the same order cancel and the sweeps use
    if refund_kind:
        if operation_id is None:
            raise CorrectionRequestError(f"{kind.value} corrections require an operation_id")

        result = await db.execute(
            select(Operation)
            .where(Operation.id == operation_id)
            .with_for_update()  # No-op on SQLite, locks row on PostgreSQL
        )
        operation = result.scalar_one_or_none()

    account = await ledger_service.lock_account(db, account_id)

    if refund_kind:
        if operation is None or operation.account_id != account.id:
            raise OperationNotFoundError(operation_id)

        if operation.corrected:
            return _noop("This operation was previously corrected", already_corrected=True)

        refunds = await ledger_service.get_refunds_for_operation(db, operation.id)
        refunded = sum(r.amount_cents for r in refunds)
        excess = refunded - operation.amount_cents
        if excess > 0:
            amount_cents = -excess
            if kind == CorrectionKind.DOUBLE_REFUND:
                entry_notes = (
                    f"Correct duplicate refund: refunded {len(refunds)} times totaling "
                    f"{ledger_service.format_cents(refunded)} from operation worth "
                    f"{ledger_service.format_cents(operation.amount_cents)}"
                )
            else:
                entry_notes = (
                    f"Correct excess refund: refunded "
                    f"{ledger_service.format_cents(refunded)} from operation worth "
                    f"{ledger_service.format_cents(operation.amount_cents)}"
                )

    else:
        transactions = await ledger_service.get_account_transactions(db, account.id)
        expected = ledger_service.compute_expected_balance(transactions)
        discrepancy = account.balance_cents - expected
        epsilon = ledger_service.BALANCE_EPSILON_CENTS

        if kind == CorrectionKind.INITIALIZE_BALANCE:
            if discrepancy <= epsilon:
                return _noop("No excess balance to register as initial balance")
            amount_cents = discrepancy
            entry_notes = "Initial Balance"

        elif kind == CorrectionKind.ADD_MISSING:
            if discrepancy >= -epsilon:
                return _noop("No missing balance to add")
            amount_cents = -discrepancy
            entry_notes = (
                f"Adding missing balance: {ledger_service.format_cents(-discrepancy)}"
            )

        elif kind == CorrectionKind.BALANCE_MISMATCH:
            if discrepancy < -epsilon:
                return CorrectionResult(
                    success=False,
                    message=(
                        f"Balance is short by {ledger_service.format_cents(-discrepancy)}"
                        ' - use the "Add Missing Amount" option'
                    ),
                    needs_manual_review=True,
                    suggested_action=CorrectionKind.ADD_MISSING,
                    discrepancy_cents=discrepancy,
                )
            if discrepancy <= epsilon:
                return _noop("Balance matches, nothing needs correction")

            # Never correct below zero; the remainder is reported, not applied
            deduction = min(discrepancy, max(account.balance_cents, 0))
            amount_cents = -deduction
            if deduction < discrepancy:
                shortfall_cents = discrepancy - deduction
                entry_notes = (
                    f"Correct excess balance: difference was "
                    f"{ledger_service.format_cents(discrepancy)} (deducted "
                    f"{ledger_service.format_cents(deduction)} - balance is now zero)"
                )
            else:
                entry_notes = (
                    f"Correct excess balance: difference was "
                    f"{ledger_service.format_cents(discrepancy)}"
                )

    if amount_cents == 0:
        return _noop("No amount to correct", correction_amount_cents=0)

    if kind == CorrectionKind.INITIALIZE_BALANCE:
        txn = await ledger_service.record_opening_balance(
            db, account, amount_cents,
            notes=notes or entry_notes,
            created_by=created_by,
        )
    else:
        txn = await ledger_service.apply_entry(
            db,
            account,
            TransactionKind.CORRECTION,
            amount_cents,
            operation_id=operation.id if operation else None,
            notes=notes or entry_notes,
            created_by=created_by,
        )

    if operation is not None:
        operation.corrected = True
        operation.corrected_at = utcnow()

    activity_service.record(
        db,
        activity_service.BALANCE_CORRECTED,
        source=created_by,
        account_id=account.id,
        operation_id=operation.id if operation else None,
        details={
            "kind": kind.value,
            "amount_cents": amount_cents,
            "balance_after_cents": account.balance_cents,
            "transaction_id": str(txn.id),
            "shortfall_cents": shortfall_cents,
        },
    )
    await db.flush()

    logger.info(
        "Applied %s correction of %s cents to account %s",
        kind.value, amount_cents, account.id,
    )
    return CorrectionResult(
        success=True,
        message="Correction completed successfully",
        corrected=True,
        correction_amount_cents=abs(amount_cents),
        new_balance_cents=account.balance_cents,
        transaction_id=txn.id,
        shortfall_cents=shortfall_cents,
    )
