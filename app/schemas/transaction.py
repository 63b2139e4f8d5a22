"""
Pydantic schemas for ledger transactions.

amount_cents is signed: credits are positive, debits negative.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel

from app.models.transaction import TransactionKind


class TransactionResponse(BaseModel):
    """Public representation of a ledger entry."""
    id: uuid.UUID
    account_id: uuid.UUID
    kind: TransactionKind
    amount_cents: int
    balance_after_cents: int
    operation_id: uuid.UUID | None
    notes: str | None
    created_by: str
    created_at: datetime

    model_config = {"from_attributes": True}
