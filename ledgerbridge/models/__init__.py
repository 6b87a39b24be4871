"""
Pydantic v2 data models for LedgerBridge.

Model Organization:
    - enums: Gateway, ledger, invoice and contact type enumerations
    - transactions: Payment gateway transactions (read-only input)
    - tokens: OAuth2 token set for the accounting connection
    - accounting: Kledo contacts, groups, finance accounts, invoices, payments
    - transfers: Transfer ledger rows and batch sync reports

Usage:
    >>> from ledgerbridge.models import ExternalTransaction
    >>> tx = ExternalTransaction(
    ...     id="x1",
    ...     external_id="ext1",
    ...     status="PAID",
    ...     amount=100000,
    ... )
    >>> tx.is_paid
    True
"""

# Enumerations
from .enums import (
    PAID_STATUSES,
    ContactType,
    InvoiceStatus,
    TransactionStatus,
    TransferStatus,
)

# Gateway models
from .transactions import ExternalTransaction

# Token models
from .tokens import OAuthTokenSet

# Accounting models
from .accounting import (
    AccountingContact,
    AccountingInvoice,
    AccountingPayment,
    ContactGroup,
    FinanceAccount,
    InvoiceItem,
)

# Ledger models
from .transfers import SyncError, SyncReport, TransferRecord

__all__ = [
    # Enumerations
    "PAID_STATUSES",
    "ContactType",
    "InvoiceStatus",
    "TransactionStatus",
    "TransferStatus",
    # Gateway
    "ExternalTransaction",
    # Tokens
    "OAuthTokenSet",
    # Accounting
    "AccountingContact",
    "AccountingInvoice",
    "AccountingPayment",
    "ContactGroup",
    "FinanceAccount",
    "InvoiceItem",
    # Ledger
    "SyncError",
    "SyncReport",
    "TransferRecord",
]
