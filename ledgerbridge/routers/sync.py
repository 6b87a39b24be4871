"""
Sync router - manual transfer triggers and transfer history.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from ledgerbridge.config import get_settings
from ledgerbridge.connectors.xendit_client import XenditClient
from ledgerbridge.dependencies import (
    get_orchestrator,
    get_storage_backend,
    get_xendit_client,
)
from ledgerbridge.models.enums import TransferStatus
from ledgerbridge.models.transactions import ExternalTransaction
from ledgerbridge.models.transfers import SyncReport, TransferRecord
from ledgerbridge.services.transfer_service import TransferOrchestrator
from ledgerbridge.storage.base import StorageBackend
from ledgerbridge.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class SingleSyncRequest(BaseModel):
    """Request to sync one gateway transaction."""

    transaction: ExternalTransaction


class SingleSyncResponse(BaseModel):
    """Result of a single sync."""

    success: bool
    transaction_id: str
    invoice_id: int
    invoice: dict[str, Any]


class TransferListResponse(BaseModel):
    """Transfer ledger page."""

    transfers: list[TransferRecord]
    count: int


@router.post("/trigger", response_model=SyncReport)
async def trigger_sync(
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    orchestrator: TransferOrchestrator = Depends(get_orchestrator),
    xendit_client: XenditClient = Depends(get_xendit_client),
):
    """
    Fetch recent paid Xendit invoices and sync each one to Kledo.
    Already-synced transactions are skipped.
    """
    if not xendit_client.is_configured:
        raise HTTPException(status_code=503, detail="XENDIT_SECRET_KEY is not configured")

    batch_limit = limit or get_settings().sync_batch_limit
    logger.info("manual_sync_triggered", limit=batch_limit)

    return await orchestrator.sync_recent(limit=batch_limit)


@router.post("/single", response_model=SingleSyncResponse)
async def sync_single(
    request: SingleSyncRequest,
    orchestrator: TransferOrchestrator = Depends(get_orchestrator),
):
    """
    Sync one transaction supplied by the dashboard.
    Returns 400 unless the transaction is PAID or SETTLED.
    """
    transaction = request.transaction
    logger.info(
        "single_sync_requested",
        transaction_id=transaction.id,
        external_id=transaction.external_id,
    )

    invoice = await orchestrator.sync_transaction(transaction)

    return SingleSyncResponse(
        success=True,
        transaction_id=transaction.id,
        invoice_id=invoice.id,
        invoice=invoice.model_dump(mode="json"),
    )


@router.get("/transfers", response_model=TransferListResponse)
async def list_transfers(
    status: Optional[TransferStatus] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    storage: StorageBackend = Depends(get_storage_backend),
):
    """Transfer history from the ledger, newest first."""
    transfers = storage.read_transfers(status=status.value if status else None, limit=limit)
    return TransferListResponse(transfers=transfers, count=len(transfers))
