"""
Account model — the billed entity that operations are charged against.

Each account has:
  - An owning User (one account per member)
  - A cached balance in integer cents
  - A currency code (USD by default, ISO 4217)

Balance management:
  `balance_cents` is a CACHE. The source of truth is the append-only
  transaction log; the cached value exists purely for fast reads and must
  always be re-derivable by replaying the account's transactions. It is
  written in exactly one place (ledger_service.apply_entry), always in the
  same unit of work as the Transaction row that explains the change.

  Unlike a retail bank account there is no database CHECK forbidding a
  negative balance: a correction must be able to record what the ledger
  says even when the cache has drifted. The ledger service refuses charges
  and withdrawals that would overdraw the account, and the BALANCE_MISMATCH
  correction caps itself at zero.

Why integer cents?
  $10.99 is stored as 1099. All arithmetic is exact, so "the cache equals
  the replay" is an equality test rather than a float comparison.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        unique=True,
        nullable=False,
    )

    # Cached balance in cents, see module docstring
    balance_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="USD",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    # --- Relationships ---
    user: Mapped["User"] = relationship(
        back_populates="account",
    )
