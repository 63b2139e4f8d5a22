"""
Pydantic schemas for account and balance endpoints.

All monetary amounts are expressed in integer cents.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class AccountResponse(BaseModel):
    """Public representation of a billed account."""
    id: uuid.UUID
    user_id: uuid.UUID
    balance_cents: int
    currency: str
    created_at: datetime

    model_config = {"from_attributes": True}


class BalanceResponse(BaseModel):
    """
    Ledger check — the cached balance next to the ledger replay.

    `is_valid` is False when the two differ by a cent or more; the
    anomaly report explains why and the correction engine fixes it.
    """
    account_id: uuid.UUID
    cached_balance_cents: int
    expected_balance_cents: int
    discrepancy_cents: int
    is_valid: bool
    total_deposits_cents: int
    total_deductions_cents: int
    total_refunds_cents: int
    total_withdrawals_cents: int
    total_corrections_cents: int
    currency: str

    model_config = {"from_attributes": True}


class LedgerEntryRequest(BaseModel):
    """Request body for admin deposits and withdrawals."""
    amount_cents: int = Field(gt=0, description="Amount in cents (must be positive)")
    notes: str | None = Field(default=None, max_length=500)
