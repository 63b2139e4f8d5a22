"""
Pydantic schemas for anomaly reports, corrections and sweep summaries.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from app.schemas.account import BalanceResponse
from app.services.anomaly_service import AnomalyKind
from app.services.correction_service import CorrectionKind


class AnomalyResponse(BaseModel):
    kind: AnomalyKind
    severity: str
    message: str
    operation_id: uuid.UUID | None = None
    refund_count: int | None = None
    refunded_cents: int | None = None
    expected_cents: int | None = None
    discrepancy_cents: int | None = None

    model_config = {"from_attributes": True}


class AnomalyReportResponse(BaseModel):
    account_id: uuid.UUID
    balance: BalanceResponse
    has_anomalies: bool
    anomalies: list[AnomalyResponse]

    model_config = {"from_attributes": True}


class CorrectionRequest(BaseModel):
    """Request body for POST /admin/accounts/{id}/corrections."""
    kind: CorrectionKind
    operation_id: uuid.UUID | None = None
    notes: str | None = Field(default=None, max_length=500)


class CorrectionResponse(BaseModel):
    success: bool
    message: str
    corrected: bool
    already_corrected: bool
    needs_manual_review: bool
    suggested_action: CorrectionKind | None
    discrepancy_cents: int | None
    shortfall_cents: int | None
    correction_amount_cents: int | None
    new_balance_cents: int | None
    transaction_id: uuid.UUID | None

    model_config = {"from_attributes": True}


class SweepSummaryResponse(BaseModel):
    processed: int
    expired: int
    refunded: int
    locks_released: int
    skipped: int
    errors: int
    failed_operation_ids: list[str]
    timestamp: datetime

    model_config = {"from_attributes": True}
