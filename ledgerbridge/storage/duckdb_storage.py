"""
DuckDB storage implementation for LedgerBridge.

Provides a local, server-only storage backend using DuckDB for OAuth tokens,
the transfer ledger and integration settings.

Key features:
- Thread-local connections to a single database file
- Automatic, idempotent schema creation
- Atomic insert-if-absent claims on the transfer ledger
- Comprehensive error handling with structured logging
"""

import json
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

import duckdb
import structlog

from ledgerbridge.models.enums import TransferStatus
from ledgerbridge.models.tokens import OAuthTokenSet
from ledgerbridge.models.transactions import ExternalTransaction
from ledgerbridge.models.transfers import TransferRecord

from .base import StorageBackend

logger = structlog.get_logger(__name__)

_TRANSFER_COLUMNS = """
    external_id, transaction_id, status, invoice_id, contact_id,
    finance_account_id, amount, currency, invoice, error, attempts,
    created_at, updated_at
"""


class StorageError(Exception):
    """Base exception for all storage operation failures."""

    code = "storage_error"


def _utcnow() -> datetime:
    """Naive UTC timestamp; DuckDB TIMESTAMP columns carry no zone."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class DuckDBStorage(StorageBackend):
    """
    DuckDB implementation of the storage backend.

    Attributes:
        db_path: Path to the DuckDB database file
        _local: Thread-local storage for per-thread connections
        _lock: Thread lock for schema operations
        _initialized: Flag tracking whether schema is initialized
    """

    def __init__(self, db_path: str = "./data/ledgerbridge.duckdb"):
        """
        Initialize DuckDB storage backend.

        Args:
            db_path: Path to DuckDB database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._local = threading.local()
        self._lock = threading.Lock()
        self._initialized = False

        logger.info("duckdb_storage_initialized", db_path=str(self.db_path))

        self._initialize_schema()

    @contextmanager
    def _get_connection(self):
        """
        Get a thread-local DuckDB connection.

        Yields:
            DuckDB connection instance

        Raises:
            StorageError: If connection cannot be established
        """
        if not hasattr(self._local, "connection"):
            try:
                self._local.connection = duckdb.connect(str(self.db_path))
                logger.debug("duckdb_connection_created", thread_id=threading.get_ident())
            except duckdb.Error as e:
                logger.error("duckdb_connection_failed", error=str(e))
                raise StorageError(f"Failed to connect to DuckDB: {e}") from e

        yield self._local.connection

    def _initialize_schema(self):
        """
        Create tables and indexes. Idempotent.

        Raises:
            StorageError: If schema creation fails
        """
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            try:
                with self._get_connection() as conn:
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS oauth_tokens (
                            connection_id VARCHAR PRIMARY KEY,
                            access_token VARCHAR NOT NULL,
                            refresh_token VARCHAR,
                            token_type VARCHAR NOT NULL,
                            expires_at TIMESTAMP,
                            scope VARCHAR,
                            updated_at TIMESTAMP NOT NULL
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS transfers (
                            external_id VARCHAR PRIMARY KEY,
                            transaction_id VARCHAR NOT NULL,
                            status VARCHAR NOT NULL,
                            claim_id VARCHAR,
                            invoice_id BIGINT,
                            contact_id BIGINT,
                            finance_account_id BIGINT,
                            amount DOUBLE NOT NULL,
                            currency VARCHAR NOT NULL,
                            invoice JSON,
                            error TEXT,
                            attempts INTEGER NOT NULL DEFAULT 1,
                            created_at TIMESTAMP NOT NULL,
                            updated_at TIMESTAMP NOT NULL
                        )
                    """)

                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_transfers_status
                        ON transfers(status)
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS integration_settings (
                            key VARCHAR PRIMARY KEY,
                            value VARCHAR NOT NULL,
                            updated_at TIMESTAMP NOT NULL
                        )
                    """)

                    self._initialized = True
                    logger.info("duckdb_schema_initialized")

            except duckdb.Error as e:
                logger.error("duckdb_schema_initialization_failed", error=str(e))
                raise StorageError(f"Failed to initialize schema: {e}") from e

    def clear_for_testing(self) -> None:
        """
        Truncate all tables. For testing only; a no-op unless TESTING is set.
        """
        if not os.environ.get("TESTING"):
            return
        with self._get_connection() as conn:
            for table in ("oauth_tokens", "transfers", "integration_settings"):
                conn.execute(f"DELETE FROM {table}")

    # =========================================================================
    # OAuth Tokens
    # =========================================================================

    def save_tokens(self, connection_id: str, tokens: OAuthTokenSet) -> None:
        """Replace the stored token set."""
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO oauth_tokens (
                        connection_id, access_token, refresh_token, token_type,
                        expires_at, scope, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        connection_id,
                        tokens.access_token,
                        tokens.refresh_token,
                        tokens.token_type,
                        _to_naive_utc(tokens.expires_at),
                        tokens.scope,
                        _utcnow(),
                    ],
                )
                logger.info(
                    "tokens_saved",
                    connection_id=connection_id,
                    has_refresh_token=bool(tokens.refresh_token),
                )

        except duckdb.Error as e:
            logger.error("save_tokens_failed", connection_id=connection_id, error=str(e))
            raise StorageError(f"Failed to save tokens: {e}") from e

    def load_tokens(self, connection_id: str) -> Optional[OAuthTokenSet]:
        """Read the stored token set."""
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    """
                    SELECT access_token, refresh_token, token_type, expires_at, scope
                    FROM oauth_tokens
                    WHERE connection_id = ?
                    """,
                    [connection_id],
                ).fetchone()

        except duckdb.Error as e:
            logger.error("load_tokens_failed", connection_id=connection_id, error=str(e))
            raise StorageError(f"Failed to load tokens: {e}") from e

        if row is None:
            return None

        expires_at = row[3]
        if expires_at is not None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        return OAuthTokenSet(
            access_token=row[0],
            refresh_token=row[1],
            token_type=row[2],
            expires_at=expires_at,
            scope=row[4],
        )

    def clear_tokens(self, connection_id: str) -> bool:
        """Delete the stored token set."""
        try:
            with self._get_connection() as conn:
                existed = conn.execute(
                    "SELECT 1 FROM oauth_tokens WHERE connection_id = ?", [connection_id]
                ).fetchone()
                conn.execute("DELETE FROM oauth_tokens WHERE connection_id = ?", [connection_id])
                logger.info("tokens_cleared", connection_id=connection_id, existed=bool(existed))
                return existed is not None

        except duckdb.Error as e:
            logger.error("clear_tokens_failed", connection_id=connection_id, error=str(e))
            raise StorageError(f"Failed to clear tokens: {e}") from e

    # =========================================================================
    # Transfer Ledger
    # =========================================================================

    def claim_transfer(
        self, transaction: ExternalTransaction, stale_after_seconds: int = 900
    ) -> tuple[bool, TransferRecord]:
        """Claim a gateway transaction; see StorageBackend.claim_transfer."""
        claim_id = str(uuid4())
        now = _utcnow()
        stale_before = now - timedelta(seconds=stale_after_seconds)

        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO transfers (
                        external_id, transaction_id, status, claim_id, amount,
                        currency, attempts, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                    ON CONFLICT DO NOTHING
                    """,
                    [
                        transaction.external_id,
                        transaction.id,
                        TransferStatus.PENDING.value,
                        claim_id,
                        transaction.amount,
                        transaction.currency,
                        now,
                        now,
                    ],
                )

                # Take over failed or abandoned attempts
                conn.execute(
                    """
                    UPDATE transfers
                    SET status = ?, claim_id = ?, transaction_id = ?, error = NULL,
                        attempts = attempts + 1, updated_at = ?
                    WHERE external_id = ?
                      AND claim_id <> ?
                      AND (status = ? OR (status = ? AND updated_at < ?))
                    """,
                    [
                        TransferStatus.PENDING.value,
                        claim_id,
                        transaction.id,
                        now,
                        transaction.external_id,
                        claim_id,
                        TransferStatus.FAILED.value,
                        TransferStatus.PENDING.value,
                        stale_before,
                    ],
                )

                row = conn.execute(
                    "SELECT claim_id FROM transfers WHERE external_id = ?",
                    [transaction.external_id],
                ).fetchone()

        except duckdb.Error as e:
            logger.error(
                "claim_transfer_failed",
                external_id=transaction.external_id,
                error=str(e),
            )
            raise StorageError(f"Failed to claim transfer: {e}") from e

        claimed = row is not None and row[0] == claim_id
        record = self.read_transfer(transaction.external_id)
        if record is None:
            raise StorageError(f"Transfer row vanished for {transaction.external_id}")

        logger.debug(
            "transfer_claim_attempted",
            external_id=transaction.external_id,
            claimed=claimed,
            status=record.status.value,
        )
        return claimed, record

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
        """Record a created invoice against the ledger row."""
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    UPDATE transfers
                    SET status = ?, invoice_id = ?, contact_id = ?, finance_account_id = ?,
                        invoice = ?, error = ?, updated_at = ?
                    WHERE external_id = ?
                    """,
                    [
                        status,
                        invoice_id,
                        contact_id,
                        finance_account_id,
                        json.dumps(invoice),
                        error,
                        _utcnow(),
                        external_id,
                    ],
                )
                logger.info(
                    "transfer_completed",
                    external_id=external_id,
                    status=status,
                    invoice_id=invoice_id,
                )

        except duckdb.Error as e:
            logger.error("complete_transfer_failed", external_id=external_id, error=str(e))
            raise StorageError(f"Failed to complete transfer: {e}") from e

    def fail_transfer(
        self, external_id: str, error: str, status: str = TransferStatus.FAILED.value
    ) -> None:
        """Mark a claimed transfer failed (or unconfirmed)."""
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    UPDATE transfers
                    SET status = ?, error = ?, updated_at = ?
                    WHERE external_id = ?
                    """,
                    [status, error, _utcnow(), external_id],
                )
                logger.info("transfer_failed_recorded", external_id=external_id, status=status)

        except duckdb.Error as e:
            logger.error("fail_transfer_failed", external_id=external_id, error=str(e))
            raise StorageError(f"Failed to record transfer failure: {e}") from e

    def read_transfer(self, external_id: str) -> Optional[TransferRecord]:
        """Read one ledger row."""
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    f"SELECT {_TRANSFER_COLUMNS} FROM transfers WHERE external_id = ?",
                    [external_id],
                ).fetchone()

        except duckdb.Error as e:
            logger.error("read_transfer_failed", external_id=external_id, error=str(e))
            raise StorageError(f"Failed to read transfer: {e}") from e

        return self._row_to_transfer(row) if row else None

    def read_transfers(
        self, status: Optional[str] = None, limit: int = 50
    ) -> list[TransferRecord]:
        """Read ledger rows, newest first."""
        query = f"SELECT {_TRANSFER_COLUMNS} FROM transfers WHERE 1=1"
        params: list[Any] = []

        if status:
            query += " AND status = ?"
            params.append(status)

        query += " ORDER BY updated_at DESC LIMIT ?"
        params.append(limit)

        try:
            with self._get_connection() as conn:
                rows = conn.execute(query, params).fetchall()

        except duckdb.Error as e:
            logger.error("read_transfers_failed", error=str(e))
            raise StorageError(f"Failed to read transfers: {e}") from e

        transfers = [self._row_to_transfer(row) for row in rows]
        logger.debug("transfers_read", count=len(transfers))
        return transfers

    def read_transfer_statuses(self, external_ids: list[str]) -> dict[str, str]:
        """Map external ids to their ledger status."""
        if not external_ids:
            return {}

        placeholders = ", ".join("?" for _ in external_ids)
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    f"SELECT external_id, status FROM transfers WHERE external_id IN ({placeholders})",
                    list(external_ids),
                ).fetchall()

        except duckdb.Error as e:
            logger.error("read_transfer_statuses_failed", error=str(e))
            raise StorageError(f"Failed to read transfer statuses: {e}") from e

        return {row[0]: row[1] for row in rows}

    @staticmethod
    def _row_to_transfer(row) -> TransferRecord:
        invoice = row[8]
        if isinstance(invoice, str):
            invoice = json.loads(invoice)

        return TransferRecord(
            external_id=row[0],
            transaction_id=row[1],
            status=row[2],
            invoice_id=row[3],
            contact_id=row[4],
            finance_account_id=row[5],
            amount=row[6],
            currency=row[7],
            invoice=invoice,
            error=row[9],
            attempts=row[10],
            created_at=row[11],
            updated_at=row[12],
        )

    # =========================================================================
    # Integration Settings
    # =========================================================================

    def write_setting(self, key: str, value: str) -> None:
        """Insert or replace an integration setting."""
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO integration_settings (key, value, updated_at)
                    VALUES (?, ?, ?)
                    """,
                    [key, value, _utcnow()],
                )
                logger.info("setting_written", key=key)

        except duckdb.Error as e:
            logger.error("write_setting_failed", key=key, error=str(e))
            raise StorageError(f"Failed to write setting: {e}") from e

    def read_setting(self, key: str) -> Optional[str]:
        """Read one integration setting."""
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT value FROM integration_settings WHERE key = ?", [key]
                ).fetchone()

        except duckdb.Error as e:
            logger.error("read_setting_failed", key=key, error=str(e))
            raise StorageError(f"Failed to read setting: {e}") from e

        return row[0] if row else None

    def read_settings(self) -> dict[str, Any]:
        """Read all integration settings."""
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT key, value, updated_at FROM integration_settings ORDER BY key"
                ).fetchall()

        except duckdb.Error as e:
            logger.error("read_settings_failed", error=str(e))
            raise StorageError(f"Failed to read settings: {e}") from e

        return {
            row[0]: {"value": row[1], "updated_at": row[2].isoformat() if row[2] else None}
            for row in rows
        }
