"""
Accounting platform entities (Kledo finance API).

Kledo responses are not uniform across endpoints, so each model exposes a
``from_api`` constructor that tolerates the field variants the API returns.
"""

import datetime as dt
from typing import Any, Optional

from pydantic import BaseModel, Field

from ledgerbridge.models.enums import ContactType, InvoiceStatus

# Kledo status_id values for sales invoices
_INVOICE_STATUS_IDS = {
    1: InvoiceStatus.UNPAID,
    2: InvoiceStatus.PARTIAL,
    3: InvoiceStatus.PAID,
}


def _as_bool(value: Any, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "active"}
    return bool(value)


def _type_ids(payload: dict[str, Any]) -> set[int]:
    ids: set[int] = set()
    raw = payload.get("type_ids")
    if isinstance(raw, list):
        for item in raw:
            try:
                ids.add(int(item))
            except (TypeError, ValueError):
                continue
    for key in ("type_id", "contact_type_id"):
        if payload.get(key) is not None:
            try:
                ids.add(int(payload[key]))
            except (TypeError, ValueError):
                pass
    return ids


class ContactGroup(BaseModel):
    """Contact group; required parent for contact creation."""

    id: int
    name: str
    active: bool = True

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "ContactGroup":
        active = payload.get("active")
        if active is None and payload.get("is_archive") is not None:
            active = not _as_bool(payload["is_archive"], default=False)
        return cls(id=payload["id"], name=payload.get("name") or "", active=_as_bool(active))


class AccountingContact(BaseModel):
    """
    Counterpart entity representing the payer.

    Attributes:
        id: Kledo contact id
        name: Display name (unique per company in Kledo)
        email: Contact email
        group_id: Owning contact group
        is_customer: Whether the contact carries the customer type (None when
            the response carries no type information)
    """

    id: int
    name: str
    email: Optional[str] = None
    group_id: Optional[int] = None
    is_customer: Optional[bool] = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "AccountingContact":
        type_ids = _type_ids(payload)
        is_customer = (ContactType.CUSTOMER.value in type_ids) if type_ids else None
        contact_type = payload.get("type") or payload.get("contact_type")
        if isinstance(contact_type, str) and contact_type.strip():
            is_customer = is_customer or contact_type.strip().lower() == "customer"
        if payload.get("is_customer") is not None:
            is_customer = _as_bool(payload["is_customer"], default=False)

        return cls(
            id=payload["id"],
            name=payload.get("name") or "",
            email=payload.get("email") or None,
            group_id=payload.get("group_id"),
            is_customer=is_customer,
        )


class FinanceAccount(BaseModel):
    """Chart-of-accounts entry; only active accounts may be used on invoices."""

    id: int
    name: str
    code: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = None
    active: bool = True

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "FinanceAccount":
        category = payload.get("category")
        if isinstance(category, dict):
            category = category.get("name")
        account_type = payload.get("type") or payload.get("account_type")
        if isinstance(account_type, dict):
            account_type = account_type.get("name")

        active = payload.get("active")
        if active is None and payload.get("is_archive") is not None:
            active = not _as_bool(payload["is_archive"], default=False)

        code = payload.get("code") or payload.get("ref_code")
        return cls(
            id=payload["id"],
            name=payload.get("name") or "",
            code=str(code) if code is not None else None,
            type=str(account_type) if account_type is not None else None,
            category=str(category) if category else None,
            active=_as_bool(active),
        )


class InvoiceItem(BaseModel):
    """Single invoice line."""

    finance_account_id: int
    description: str
    qty: float = Field(default=1, gt=0)
    price: float = Field(ge=0)

    @property
    def amount(self) -> float:
        return self.qty * self.price


class AccountingInvoice(BaseModel):
    """
    Sales invoice created in the accounting platform.

    Attributes:
        id: Kledo invoice id
        contact_id: Customer contact the invoice is billed to
        status: Payment state
        items: Invoice lines
        ref_number: Reference carrying the gateway external id
        total: Invoice total as reported (or computed from items)
    """

    id: int
    contact_id: int
    status: InvoiceStatus = InvoiceStatus.UNPAID
    items: list[InvoiceItem] = Field(default_factory=list)
    ref_number: Optional[str] = None
    total: Optional[float] = None

    @classmethod
    def from_api(
        cls,
        payload: dict[str, Any],
        fallback_items: Optional[list[InvoiceItem]] = None,
        fallback_contact_id: Optional[int] = None,
        fallback_ref_number: Optional[str] = None,
    ) -> "AccountingInvoice":
        """
        Build from a create/read response.

        Kledo sometimes echoes only the id; the submitted values fill the gaps.
        """
        status = InvoiceStatus.UNPAID
        if payload.get("status_id") in _INVOICE_STATUS_IDS:
            status = _INVOICE_STATUS_IDS[payload["status_id"]]
        elif isinstance(payload.get("status"), str):
            try:
                status = InvoiceStatus(payload["status"].lower())
            except ValueError:
                pass

        items = fallback_items or []
        raw_items = payload.get("items") or payload.get("detail")
        if isinstance(raw_items, list) and raw_items:
            parsed = []
            for raw in raw_items:
                try:
                    parsed.append(
                        InvoiceItem(
                            finance_account_id=raw["finance_account_id"],
                            description=raw.get("desc") or raw.get("description") or "",
                            qty=raw.get("qty", 1),
                            price=raw.get("price", 0),
                        )
                    )
                except (KeyError, TypeError, ValueError):
                    parsed = []
                    break
            if parsed:
                items = parsed

        total = payload.get("amount_after_tax", payload.get("total", payload.get("amount")))
        if total is None and items:
            total = sum(item.amount for item in items)

        return cls(
            id=payload["id"],
            contact_id=payload.get("contact_id") or fallback_contact_id,
            status=status,
            items=items,
            ref_number=payload.get("ref_number") or fallback_ref_number,
            total=total,
        )


class AccountingPayment(BaseModel):
    """Payment recorded against an invoice."""

    id: Optional[int] = None
    invoice_id: int
    amount: float
    date: dt.date
