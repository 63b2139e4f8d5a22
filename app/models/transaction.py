"""
Transaction model — the append-only ledger.

Every change to an account's cached balance creates exactly one
Transaction, and the row carries the balance immediately after it was
applied (`balance_after_cents`). Rows are never updated or deleted.

Kinds and sign conventions (amount_cents is SIGNED):
  - DEPOSIT            > 0   money paid in (payment provider, admin top-up,
                             or an opening balance recorded by a correction)
  - OPERATION_DEDUCT   < 0   an operation was charged
  - REFUND             > 0   an operation's charge was returned
  - WITHDRAW           < 0   money paid out
  - CORRECTION         ±     an audited repair of cache/ledger drift or of
                             an erroneous refund

Replaying an account's rows with

    Σ DEPOSIT − Σ|OPERATION_DEDUCT| + Σ REFUND − Σ|WITHDRAW| + Σ CORRECTION

must give its cached balance. See ledger_service.compute_expected_balance.

`operation_id` links REFUND, OPERATION_DEDUCT and CORRECTION rows to the
operation that caused them; the idempotent refund guard and the double
refund detector both query on it.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, Enum, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class TransactionKind(str, enum.Enum):
    DEPOSIT = "DEPOSIT"
    OPERATION_DEDUCT = "OPERATION_DEDUCT"
    REFUND = "REFUND"
    WITHDRAW = "WITHDRAW"
    CORRECTION = "CORRECTION"


class Transaction(Base):
    __tablename__ = "transactions"

    __table_args__ = (
        CheckConstraint("amount_cents != 0", name="ck_transactions_nonzero_amount"),
        Index("ix_transactions_account_created", "account_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=False,
    )

    kind: Mapped[TransactionKind] = mapped_column(
        Enum(TransactionKind),
        nullable=False,
    )

    # Signed amount in cents
    amount_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    # Cached balance right after this row was applied
    balance_after_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    operation_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("operations.id"),
        nullable=True,
        index=True,
    )

    notes: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )

    # "system", "worker", "cleanup-sweep", "timeout-sweep", or an admin user id
    created_by: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="system",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
