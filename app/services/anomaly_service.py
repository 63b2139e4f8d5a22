"""
Anomaly service — read-only detection of ledger inconsistencies.

detect_anomalies() is a pure function over an account's transactions and
operations. It never raises for a detected anomaly: findings are returned
as alerts and fixed explicitly through the correction service.

Alert kinds:
  DOUBLE_REFUND     — an operation has more than one REFUND
  OVER_REFUND       — refunds for a charged operation exceed its amount
  PHANTOM_REFUND    — an operation with amount 0 has refunds
  BALANCE_MISMATCH  — cached balance differs from the ledger replay

Operations already flagged `corrected` are excluded from the per-operation
checks so a fixed anomaly does not keep resurfacing.
"""

import uuid
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import AccountNotFoundError
from app.models.account import Account
from app.models.operation import Operation
from app.models.transaction import Transaction, TransactionKind
from app.services import ledger_service


class AnomalyKind(str, Enum):
    DOUBLE_REFUND = "DOUBLE_REFUND"
    OVER_REFUND = "OVER_REFUND"
    PHANTOM_REFUND = "PHANTOM_REFUND"
    BALANCE_MISMATCH = "BALANCE_MISMATCH"


@dataclass
class Anomaly:
    kind: AnomalyKind
    message: str
    severity: str = "high"
    operation_id: uuid.UUID | None = None
    refund_count: int | None = None
    refunded_cents: int | None = None
    expected_cents: int | None = None
    discrepancy_cents: int | None = None


@dataclass
class AnomalyReport:
    account_id: uuid.UUID
    balance: ledger_service.BalanceCheck
    anomalies: list[Anomaly] = field(default_factory=list)

    @property
    def has_anomalies(self) -> bool:
        return bool(self.anomalies)


def detect_anomalies(
    transactions: Iterable[Transaction],
    operations: Iterable[Operation],
    cached_balance_cents: int,
) -> list[Anomaly]:
    transactions = list(transactions)
    anomalies: list[Anomaly] = []

    refunds_by_operation: dict[uuid.UUID, list[int]] = defaultdict(list)
    for txn in transactions:
        if txn.kind == TransactionKind.REFUND and txn.operation_id is not None:
            refunds_by_operation[txn.operation_id].append(txn.amount_cents)

    for operation in operations:
        if operation.corrected:
            continue
        refunds = refunds_by_operation.get(operation.id)
        if not refunds:
            continue
        refunded = sum(refunds)

        if len(refunds) > 1:
            anomalies.append(Anomaly(
                kind=AnomalyKind.DOUBLE_REFUND,
                operation_id=operation.id,
                refund_count=len(refunds),
                refunded_cents=refunded,
                message=f"Operation {operation.id} was refunded {len(refunds)} times",
            ))

        if operation.amount_cents > 0 and refunded > operation.amount_cents:
            anomalies.append(Anomaly(
                kind=AnomalyKind.OVER_REFUND,
                operation_id=operation.id,
                refunded_cents=refunded,
                expected_cents=operation.amount_cents,
                message=(
                    f"Operation {operation.id} refunded "
                    f"{ledger_service.format_cents(refunded)} against a charge of "
                    f"{ledger_service.format_cents(operation.amount_cents)}"
                ),
            ))
        elif operation.amount_cents == 0 and refunded > 0:
            anomalies.append(Anomaly(
                kind=AnomalyKind.PHANTOM_REFUND,
                operation_id=operation.id,
                refunded_cents=refunded,
                message=(
                    f"Operation {operation.id} has no charge but was refunded "
                    f"{ledger_service.format_cents(refunded)}"
                ),
            ))

    expected = ledger_service.compute_expected_balance(transactions)
    discrepancy = cached_balance_cents - expected
    if abs(discrepancy) >= ledger_service.BALANCE_EPSILON_CENTS:
        anomalies.append(Anomaly(
            kind=AnomalyKind.BALANCE_MISMATCH,
            discrepancy_cents=discrepancy,
            expected_cents=expected,
            message=(
                f"Cached balance {ledger_service.format_cents(cached_balance_cents)} "
                f"differs from ledger {ledger_service.format_cents(expected)} "
                f"by {ledger_service.format_cents(discrepancy)}"
            ),
        ))

    return anomalies


async def get_anomaly_report(db: AsyncSession, account_id: uuid.UUID) -> AnomalyReport:
    """Load an account's ledger and operations and run detect_anomalies()."""
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFoundError(account_id)

    transactions = await ledger_service.get_account_transactions(db, account_id)
    result = await db.execute(
        select(Operation).where(Operation.account_id == account_id)
    )
    operations = list(result.scalars().all())

    return AnomalyReport(
        account_id=account_id,
        balance=ledger_service.build_balance_check(account, transactions),
        anomalies=detect_anomalies(transactions, operations, account.balance_cents),
    )
