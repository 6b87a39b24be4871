"""
Abstract storage interface for LedgerBridge.

The service keeps three kinds of durable state:
- OAuth tokens for the accounting platform connection (server-only)
- The transfer ledger: one row per gateway external id, used both as the
  idempotency guard against duplicate invoices and as transfer history
- Integration settings changed through administrative endpoints
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from ledgerbridge.models.enums import TransferStatus
from ledgerbridge.models.tokens import OAuthTokenSet
from ledgerbridge.models.transactions import ExternalTransaction
from ledgerbridge.models.transfers import TransferRecord


class StorageBackend(ABC):
    """
    Abstract base class for all storage implementations.

    Implementations must make ``claim_transfer`` atomic across concurrent
    callers: for a given external id at most one caller may hold a claim.
    """

    # =========================================================================
    # OAuth Tokens
    # =========================================================================

    @abstractmethod
    def save_tokens(self, connection_id: str, tokens: OAuthTokenSet) -> None:
        """Replace the token set stored for ``connection_id``."""
        pass

    @abstractmethod
    def load_tokens(self, connection_id: str) -> Optional[OAuthTokenSet]:
        """Return the stored token set, or None when disconnected."""
        pass

    @abstractmethod
    def clear_tokens(self, connection_id: str) -> bool:
        """
        Delete the stored token set.

        Returns:
            True if a token set existed
        """
        pass

    # =========================================================================
    # Transfer Ledger
    # =========================================================================

    @abstractmethod
    def claim_transfer(
        self, transaction: ExternalTransaction, stale_after_seconds: int = 900
    ) -> tuple[bool, TransferRecord]:
        """
        Atomically claim a gateway transaction for syncing.

        A claim succeeds when no row exists for the external id, when the
        existing row is ``failed``, or when it is ``pending`` but older than
        ``stale_after_seconds`` (an abandoned attempt).

        Args:
            transaction: Gateway transaction to claim
            stale_after_seconds: Age after which a pending claim may be taken over

        Returns:
            (claimed, record): ``record`` is the pending row when claimed,
            otherwise the row that blocked the claim
        """
        pass

    @abstractmethod
    def complete_transfer(
        self,
        external_id: str,
        status: str,
        invoice_id: int,
        contact_id: int,
        finance_account_id: int,
        invoice: dict[str, Any],
        error: Optional[str] = None,
    ) -> None:
        """Record a created invoice (``synced`` or ``payment_failed``)."""
        pass

    @abstractmethod
    def fail_transfer(
        self, external_id: str, error: str, status: str = TransferStatus.FAILED.value
    ) -> None:
        """
        Mark a claimed transfer ``failed`` so a later attempt can retry.

        ``unconfirmed`` is passed instead when the invoice may already exist
        upstream; such rows are never claimed again.
        """
        pass

    @abstractmethod
    def read_transfer(self, external_id: str) -> Optional[TransferRecord]:
        """Read one ledger row."""
        pass

    @abstractmethod
    def read_transfers(
        self, status: Optional[str] = None, limit: int = 50
    ) -> list[TransferRecord]:
        """Read ledger rows, newest first."""
        pass

    @abstractmethod
    def read_transfer_statuses(self, external_ids: list[str]) -> dict[str, str]:
        """Map external ids to ledger status for the ids that have a row."""
        pass

    # =========================================================================
    # Integration Settings
    # =========================================================================

    @abstractmethod
    def write_setting(self, key: str, value: str) -> None:
        """Insert or replace an integration setting."""
        pass

    @abstractmethod
    def read_setting(self, key: str) -> Optional[str]:
        """Read one integration setting."""
        pass

    @abstractmethod
    def read_settings(self) -> dict[str, Any]:
        """Read all integration settings with their update time."""
        pass
