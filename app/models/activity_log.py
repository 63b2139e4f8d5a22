"""
ActivityLog model — append-only audit entries for lifecycle and ledger events.

`details` is a JSON object whose shape depends on `action`; for example an
OPERATION_EXPIRED_NO_HEARTBEAT entry records the previous status, both
heartbeat timestamps, the refunded amount (0 if none) and the reason.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    account_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=True,
        index=True,
    )

    operation_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("operations.id"),
        nullable=True,
        index=True,
    )

    action: Mapped[str] = mapped_column(String(64), nullable=False)

    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Who triggered it: "api", "worker", "cleanup-sweep", "timeout-sweep", ...
    source: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
