"""
Pydantic schemas for operation endpoints and worker callbacks.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from app.models.operation import OperationStatus


class PackageOption(BaseModel):
    """One package offered by the provider for the owner to choose."""
    id: str
    name: str
    price_cents: int = Field(ge=0)


class OperationCreateRequest(BaseModel):
    """Request body for POST /operations."""
    type: str = Field(min_length=1, max_length=50)
    amount_cents: int = Field(default=0, ge=0, description="Known cost in cents, 0 if not yet known")
    provider_account_id: str | None = Field(default=None, max_length=64)
    customer_ref: str | None = Field(default=None, max_length=64)


class OperationResponse(BaseModel):
    """Public representation of an operation."""
    id: uuid.UUID
    account_id: uuid.UUID | None
    type: str
    amount_cents: int
    status: OperationStatus
    packages: list[dict] | None
    selected_package: dict | None
    provider_account_id: str | None
    corrected: bool
    last_heartbeat: datetime | None
    heartbeat_expiry: datetime | None
    completed_at: datetime | None
    result_message: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class HeartbeatResponse(BaseModel):
    operation_id: uuid.UUID
    status: OperationStatus
    expires_at: datetime
    ttl_seconds: int


class HeartbeatStatusResponse(BaseModel):
    operation_id: uuid.UUID
    status: OperationStatus
    last_heartbeat: datetime | None
    heartbeat_expiry: datetime | None
    is_expired: bool
    requires_heartbeat: bool


class CancelResponse(BaseModel):
    operation: OperationResponse
    refunded_cents: int
    previously_refunded: bool


class SelectPackageRequest(BaseModel):
    package_id: str


class CaptchaResponse(BaseModel):
    operation_id: uuid.UUID
    captcha_image: str | None
    expires_in: int | None = Field(description="Seconds until the challenge expires")


class CaptchaSubmitRequest(BaseModel):
    solution: str = Field(min_length=1, max_length=64)


class WorkerProgressRequest(BaseModel):
    """Progress report posted by the Automation Worker."""
    status: OperationStatus
    packages: list[PackageOption] | None = None
    captcha_image: str | None = None
    captcha_expiry: datetime | None = None
    message: str | None = Field(default=None, max_length=500)
    provider_account_id: str | None = Field(default=None, max_length=64)
