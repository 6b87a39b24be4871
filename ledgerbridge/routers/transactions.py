"""
Transactions router - Xendit invoice listing with ledger sync status.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from ledgerbridge.connectors.xendit_client import XenditClient
from ledgerbridge.dependencies import get_storage_backend, get_xendit_client
from ledgerbridge.models.enums import TransactionStatus, TransferStatus
from ledgerbridge.storage.base import StorageBackend
from ledgerbridge.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()

NOT_SYNCED = "not_synced"

# Ledger statuses that mean an invoice exists in Kledo
SYNCED_STATUSES = frozenset({TransferStatus.SYNCED.value, TransferStatus.PAYMENT_FAILED.value})


@router.get("")
async def list_transactions(
    limit: int = Query(default=50, ge=1, le=100),
    xendit_client: XenditClient = Depends(get_xendit_client),
    storage: StorageBackend = Depends(get_storage_backend),
) -> dict[str, Any]:
    """
    Recent Xendit invoices with a summary by status.

    Each transaction carries ``sync_status`` from the transfer ledger
    (``not_synced`` when no transfer was attempted).
    """
    if not xendit_client.is_configured:
        raise HTTPException(status_code=503, detail="XENDIT_SECRET_KEY is not configured")

    transactions = await xendit_client.list_invoices(limit=limit)
    ledger = storage.read_transfer_statuses([tx.external_id for tx in transactions])

    paid = [tx for tx in transactions if tx.is_paid]
    summary = {
        "total": len(transactions),
        "paid": len(paid),
        "pending": sum(1 for tx in transactions if tx.status == TransactionStatus.PENDING.value),
        "expired": sum(1 for tx in transactions if tx.status == TransactionStatus.EXPIRED.value),
        "paid_amount": sum(tx.amount for tx in paid),
        "synced": sum(1 for tx in transactions if ledger.get(tx.external_id) in SYNCED_STATUSES),
    }

    logger.info("transactions_listed", total=summary["total"], paid=summary["paid"])

    return {
        "success": True,
        "transactions": [
            {
                **tx.model_dump(mode="json"),
                "sync_status": ledger.get(tx.external_id, NOT_SYNCED),
            }
            for tx in transactions
        ],
        "summary": summary,
    }
