"""
Business logic layer.
Services orchestrate the connectors and the transfer ledger.
"""

from ledgerbridge.services.transfer_service import (
    FINANCE_ACCOUNT_SETTING,
    ContactResolutionFailed,
    NoFinanceAccount,
    TransactionNotPaid,
    TransferError,
    TransferInProgress,
    TransferOrchestrator,
)

__all__ = [
    "FINANCE_ACCOUNT_SETTING",
    "TransferOrchestrator",
    "TransferError",
    "TransactionNotPaid",
    "TransferInProgress",
    "NoFinanceAccount",
    "ContactResolutionFailed",
]
