"""
Activity service — the append-only audit trail.

Like notifications, audit rows are added to the caller's session and
committed with the change they describe.
"""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.activity_log import ActivityLog

OPERATION_EXPIRED_NO_HEARTBEAT = "OPERATION_EXPIRED_NO_HEARTBEAT"
OPERATION_TIMEOUT = "OPERATION_TIMEOUT"
OPERATION_CANCELLED = "OPERATION_CANCELLED"
OPERATION_FAILED = "OPERATION_FAILED"
OPERATION_EXPIRED = "OPERATION_EXPIRED"
BALANCE_CORRECTED = "BALANCE_CORRECTED"


def record(
    db: AsyncSession,
    action: str,
    source: str,
    details: dict | None = None,
    account_id: uuid.UUID | None = None,
    operation_id: uuid.UUID | None = None,
) -> ActivityLog:
    entry = ActivityLog(
        action=action,
        source=source,
        details=details or {},
        account_id=account_id,
        operation_id=operation_id,
    )
    db.add(entry)
    return entry


async def list_activity(
    db: AsyncSession,
    account_id: uuid.UUID,
    action: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[ActivityLog]:
    """Audit entries for an account, newest first."""
    query = (
        select(ActivityLog)
        .where(ActivityLog.account_id == account_id)
        .order_by(ActivityLog.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    if action:
        query = query.where(ActivityLog.action == action)

    result = await db.execute(query)
    return list(result.scalars().all())
