"""
Payment gateway transaction model.

An ExternalTransaction is what Xendit reports for an invoice, either in a
webhook delivery or in the invoice listing API. It is read-only here.
"""

from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ledgerbridge.models.enums import PAID_STATUSES


class ExternalTransaction(BaseModel):
    """
    Completed (or pending) payment reported by the gateway.

    Attributes:
        id: Gateway invoice id
        external_id: Merchant reference; the idempotency key for syncing
        status: Gateway status (PAID, SETTLED, PENDING, EXPIRED, ...)
        amount: Amount charged, in ``currency`` units
        currency: ISO currency code
        payer_email: Payer email, when the gateway has one
        description: Free-text description of what was paid
        created_at: When the gateway created the invoice
        paid_at: When payment completed
    """

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    external_id: str = Field(min_length=1)
    status: str
    amount: float = Field(ge=0)
    currency: str = "IDR"
    payer_email: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("created_at", "created")
    )
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    payment_channel: Optional[str] = None

    @field_validator("status")
    @classmethod
    def normalize_status(cls, v: str) -> str:
        """Gateway statuses are upper-case; accept any casing."""
        v = v.strip().upper()
        if not v:
            raise ValueError("status must not be empty")
        return v

    @field_validator("payer_email")
    @classmethod
    def blank_email_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @property
    def is_paid(self) -> bool:
        """True for PAID and SETTLED transactions."""
        return self.status in PAID_STATUSES
