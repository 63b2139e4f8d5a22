"""
Notification service — writes to and reads from the notification outbox.

notify() only adds a row to the caller's session; it never commits, so the
notification shares the fate of the event it reports.
"""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.notification import Notification


def operation_link(operation_id: uuid.UUID) -> str:
    return f"/dashboard/operations/{operation_id}"


def notify(
    db: AsyncSession,
    account_id: uuid.UUID,
    title: str,
    message: str,
    severity: str = "info",
    link: str | None = None,
) -> Notification:
    notification = Notification(
        account_id=account_id,
        title=title,
        message=message,
        severity=severity,
        link=link,
    )
    db.add(notification)
    return notification


async def list_notifications(
    db: AsyncSession,
    account_id: uuid.UUID,
    unread_only: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> list[Notification]:
    query = (
        select(Notification)
        .where(Notification.account_id == account_id)
        .order_by(Notification.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    if unread_only:
        query = query.where(Notification.is_read.is_(False))

    result = await db.execute(query)
    return list(result.scalars().all())
