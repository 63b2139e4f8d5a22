"""
Notifications router — the member's notification feed.

  GET /notifications  — Own notifications, newest first
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_account
from app.models.account import Account
from app.schemas.notification import NotificationResponse
from app.services import notification_service

router = APIRouter()


@router.get(
    "",
    response_model=list[NotificationResponse],
    summary="List own notifications",
)
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await notification_service.list_notifications(
        db=db,
        account_id=account.id,
        unread_only=unread_only,
        limit=limit,
        offset=offset,
    )
