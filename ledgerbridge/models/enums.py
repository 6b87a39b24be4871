"""
Enumeration types for LedgerBridge.

All enums inherit from str to ensure JSON serialization compatibility.
"""

from enum import Enum


class TransactionStatus(str, Enum):
    """Invoice statuses reported by the payment gateway."""

    PENDING = "PENDING"
    PAID = "PAID"
    SETTLED = "SETTLED"
    EXPIRED = "EXPIRED"


# Gateway statuses that mean the money has arrived
PAID_STATUSES = frozenset({TransactionStatus.PAID.value, TransactionStatus.SETTLED.value})


class TransferStatus(str, Enum):
    """
    Lifecycle of a transfer ledger row.

    ``pending`` is held while a sync attempt owns the external id. ``synced``
    and ``payment_failed`` are terminal (an invoice exists). ``unconfirmed``
    is terminal too: Kledo accepted the invoice request but its reply was
    unreadable, so the row waits for manual reconciliation. ``failed`` may be
    claimed again by a later attempt.
    """

    PENDING = "pending"
    SYNCED = "synced"
    PAYMENT_FAILED = "payment_failed"
    UNCONFIRMED = "unconfirmed"
    FAILED = "failed"


class InvoiceStatus(str, Enum):
    """Accounting invoice payment state."""

    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


class ContactType(int, Enum):
    """Kledo contact type ids."""

    CUSTOMER = 1
    SUPPLIER = 2
    EMPLOYEE = 3
    OTHER = 4
