"""
Accounting router - Kledo finance accounts, profile and integration settings.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ledgerbridge.connectors.kledo_client import KledoClient
from ledgerbridge.dependencies import get_kledo_client, get_orchestrator, get_storage_backend
from ledgerbridge.models.accounting import FinanceAccount
from ledgerbridge.services.transfer_service import FINANCE_ACCOUNT_SETTING, TransferOrchestrator
from ledgerbridge.storage.base import StorageBackend
from ledgerbridge.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class FinanceAccountsResponse(BaseModel):
    """Finance accounts list."""

    success: bool = True
    accounts: list[FinanceAccount]
    count: int
    configured_account_id: Optional[int] = None


class FinanceAccountUpdate(BaseModel):
    """Preferred finance account for invoice lines."""

    finance_account_id: int = Field(gt=0)


class FinanceAccountUpdateResponse(BaseModel):
    success: bool
    finance_account: FinanceAccount


@router.get("/accounts", response_model=FinanceAccountsResponse)
async def list_finance_accounts(
    active_only: bool = False,
    kledo_client: KledoClient = Depends(get_kledo_client),
    storage: StorageBackend = Depends(get_storage_backend),
):
    """List Kledo finance accounts, marking the configured one."""
    accounts = await kledo_client.list_finance_accounts()
    if active_only:
        accounts = [account for account in accounts if account.active]

    configured = storage.read_setting(FINANCE_ACCOUNT_SETTING)
    return FinanceAccountsResponse(
        accounts=accounts,
        count=len(accounts),
        configured_account_id=int(configured) if configured and configured.isdigit() else None,
    )


@router.get("/profile")
async def get_profile(kledo_client: KledoClient = Depends(get_kledo_client)) -> dict[str, Any]:
    """Connection test: fetch the authenticated Kledo user."""
    profile = await kledo_client.get_profile()
    logger.info("kledo_profile_fetched")
    return {"success": True, "profile": profile}


@router.get("/settings")
async def get_integration_settings(
    storage: StorageBackend = Depends(get_storage_backend),
) -> dict[str, Any]:
    """Persisted integration settings."""
    return {"success": True, "settings": storage.read_settings()}


@router.put("/settings/finance-account", response_model=FinanceAccountUpdateResponse)
async def update_finance_account(
    update: FinanceAccountUpdate,
    orchestrator: TransferOrchestrator = Depends(get_orchestrator),
):
    """
    Set the finance account used for invoice lines.
    The account must exist in Kledo and be active.
    """
    account = await orchestrator.configure_finance_account(update.finance_account_id)
    return FinanceAccountUpdateResponse(success=True, finance_account=account)
