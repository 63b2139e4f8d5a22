"""
Operation model — one requested automation job against an external provider.

An Operation is created in PENDING by the request-accepting endpoint and is
then mutated only by:
  (a) the Automation Worker reporting progress (/worker callbacks),
  (b) the liveness sweeps on timeout,
  (c) its owner while the status allows it (package choice, captcha
      solution, final confirmation, cancellation),
  (d) the correction engine setting the one-time `corrected` flag.

Operations are never deleted; together with the ledger they are the audit
trail.

Status is a closed enum with an explicit transition table. Any status
write goes through `can_transition`; once a terminal status is reached no
further status writes are accepted. Interactive statuses need a human or a
client loop to supply input and therefore carry a heartbeat window
(`last_heartbeat` / `heartbeat_expiry`).
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, Boolean, DateTime, Enum, ForeignKey, Text, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class OperationStatus(str, enum.Enum):
    PENDING = "PENDING"
    AWAITING_PACKAGE = "AWAITING_PACKAGE"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PROCESSING = "PROCESSING"
    AWAITING_CAPTCHA = "AWAITING_CAPTCHA"
    AWAITING_FINAL_CONFIRM = "AWAITING_FINAL_CONFIRM"
    COMPLETING = "COMPLETING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = frozenset({
    OperationStatus.COMPLETED,
    OperationStatus.FAILED,
    OperationStatus.CANCELLED,
    OperationStatus.EXPIRED,
})

# Statuses waiting on a human or client loop; entering one opens a heartbeat window
INTERACTIVE_STATUSES = frozenset({
    OperationStatus.AWAITING_PACKAGE,
    OperationStatus.AWAITING_PAYMENT,
    OperationStatus.AWAITING_CAPTCHA,
    OperationStatus.AWAITING_FINAL_CONFIRM,
})

# Subset of the interactive statuses the liveness sweep force-expires.
# AWAITING_PAYMENT is settled by the payment provider, not by an open tab.
HEARTBEAT_MONITORED_STATUSES = frozenset({
    OperationStatus.AWAITING_PACKAGE,
    OperationStatus.AWAITING_FINAL_CONFIRM,
    OperationStatus.AWAITING_CAPTCHA,
})

CANCELLABLE_STATUSES = frozenset({
    OperationStatus.PENDING,
    OperationStatus.AWAITING_PACKAGE,
    OperationStatus.AWAITING_PAYMENT,
    OperationStatus.AWAITING_CAPTCHA,
})

# Forward edges driven by the worker or by the owner's input
_FORWARD_TRANSITIONS: dict[OperationStatus, frozenset[OperationStatus]] = {
    OperationStatus.PENDING: frozenset({
        OperationStatus.AWAITING_PACKAGE,
        OperationStatus.PROCESSING,
    }),
    OperationStatus.AWAITING_PACKAGE: frozenset({
        OperationStatus.AWAITING_PAYMENT,
        OperationStatus.COMPLETING,
    }),
    OperationStatus.AWAITING_PAYMENT: frozenset({
        OperationStatus.PROCESSING,
    }),
    OperationStatus.PROCESSING: frozenset({
        OperationStatus.AWAITING_CAPTCHA,
        OperationStatus.COMPLETING,
    }),
    OperationStatus.AWAITING_CAPTCHA: frozenset({
        OperationStatus.PROCESSING,
        OperationStatus.AWAITING_FINAL_CONFIRM,
        OperationStatus.COMPLETING,
    }),
    OperationStatus.AWAITING_FINAL_CONFIRM: frozenset({
        OperationStatus.COMPLETING,
    }),
    OperationStatus.COMPLETING: frozenset({
        OperationStatus.COMPLETED,
    }),
}


def allowed_transitions(current: OperationStatus) -> frozenset[OperationStatus]:
    """Every status reachable from `current` in one write."""
    if current in TERMINAL_STATUSES:
        return frozenset()
    targets = set(_FORWARD_TRANSITIONS.get(current, frozenset()))
    targets.update({OperationStatus.FAILED, OperationStatus.EXPIRED})
    if current in CANCELLABLE_STATUSES:
        targets.add(OperationStatus.CANCELLED)
    return frozenset(targets)


def can_transition(current: OperationStatus, target: OperationStatus) -> bool:
    return target in allowed_transitions(current)


class Operation(Base):
    __tablename__ = "operations"

    __table_args__ = (
        Index("ix_operations_status_heartbeat_expiry", "status", "heartbeat_expiry"),
        Index("ix_operations_account_created", "account_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Billed account. NULL for storefront operations started by a customer
    # principal that is not an Account (see customer_ref).
    account_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=True,
    )
    customer_ref: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )

    # Externally defined action kind (e.g. "renew", "activate")
    type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    # Cost in cents; may start at 0 and be set once a package is chosen
    amount_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    status: Mapped[OperationStatus] = mapped_column(
        Enum(OperationStatus),
        nullable=False,
        default=OperationStatus.PENDING,
    )

    # --- Artifacts supplied by the worker or the owner ---
    packages: Mapped[list | None] = mapped_column(JSON, nullable=True)
    selected_package: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    captcha_image: Mapped[str | None] = mapped_column(Text, nullable=True)
    captcha_expiry: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    captcha_solution: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Provider-side account this operation drives; also the lock resource id
    provider_account_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )

    # --- One-time correction flag ---
    corrected: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    corrected_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # --- Liveness ---
    last_heartbeat: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    heartbeat_expiry: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # --- Outcome ---
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    result_message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)

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

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
