"""Pydantic schemas for notifications and audit entries."""

import uuid
from datetime import datetime

from pydantic import BaseModel


class NotificationResponse(BaseModel):
    id: uuid.UUID
    title: str
    message: str
    severity: str
    link: str | None
    is_read: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class ActivityLogResponse(BaseModel):
    id: uuid.UUID
    account_id: uuid.UUID | None
    operation_id: uuid.UUID | None
    action: str
    details: dict
    source: str
    created_at: datetime

    model_config = {"from_attributes": True}
