"""
Transfer ledger and sync reporting models.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ledgerbridge.models.enums import TransferStatus


class TransferRecord(BaseModel):
    """
    One row of the transfer ledger, keyed by gateway ``external_id``.

    The ledger is both the idempotency guard (one invoice per external id)
    and the transfer history shown on the dashboard.
    """

    external_id: str
    transaction_id: str
    status: TransferStatus
    invoice_id: Optional[int] = None
    contact_id: Optional[int] = None
    finance_account_id: Optional[int] = None
    amount: float
    currency: str
    invoice: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int = Field(default=1, ge=0)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SyncError(BaseModel):
    """Per-transaction failure in a batch sync."""

    transaction_id: str
    error: str


class SyncReport(BaseModel):
    """Outcome of a manual batch sync."""

    success: bool = True
    processed: int = 0
    successful: int = 0
    skipped: int = 0
    errors: list[SyncError] = Field(default_factory=list)
