"""
Transfer orchestration: mirror a paid gateway transaction into Kledo.

For each paid transaction the orchestrator:
1. Claims the gateway external id in the transfer ledger
2. Resolves (or creates) a customer contact for the payer
3. Resolves a revenue finance account
4. Creates a sales invoice referencing the external id
5. Records a payment for the full amount

The ledger claim plus a per-key lock guarantees at most one invoice per
external id, even when the gateway redelivers a webhook concurrently.
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

import structlog

from ledgerbridge.connectors.errors import (
    AuthRequired,
    ConnectorError,
    MalformedResponse,
    UpstreamError,
)
from ledgerbridge.connectors.kledo_client import KledoClient
from ledgerbridge.connectors.xendit_client import XenditClient
from ledgerbridge.models.accounting import (
    AccountingContact,
    AccountingInvoice,
    ContactGroup,
    FinanceAccount,
    InvoiceItem,
)
from ledgerbridge.models.enums import PAID_STATUSES, InvoiceStatus, TransferStatus
from ledgerbridge.models.transactions import ExternalTransaction
from ledgerbridge.models.transfers import SyncError, SyncReport, TransferRecord
from ledgerbridge.storage.base import StorageBackend
from ledgerbridge.storage.duckdb_storage import StorageError

logger = structlog.get_logger()

# Integration setting holding the preferred finance account id
FINANCE_ACCOUNT_SETTING = "finance_account_id"

CUSTOMER_GROUP_KEYWORDS = ("customer", "pelanggan", "client", "klien")
REVENUE_ACCOUNT_KEYWORDS = ("revenue", "sales", "income", "pendapatan", "penjualan")

# Ledger rows that already carry an invoice
_TERMINAL_STATUSES = (TransferStatus.SYNCED, TransferStatus.PAYMENT_FAILED)


class TransferError(Exception):
    """Base class for transfer failures."""

    code = "transfer_error"
    status_code = 422


class TransactionNotPaid(TransferError):
    """Raised when asked to sync a transaction that is not PAID or SETTLED."""

    code = "transaction_not_paid"
    status_code = 400

    def __init__(self, transaction: ExternalTransaction):
        self.transaction_id = transaction.id
        self.status = transaction.status
        super().__init__(
            f"Transaction {transaction.id} has status {transaction.status}; "
            f"only {', '.join(sorted(PAID_STATUSES))} transactions are synced"
        )


class TransferInProgress(TransferError):
    """Raised when another attempt currently holds the ledger claim."""

    code = "transfer_in_progress"
    status_code = 409

    def __init__(self, external_id: str):
        self.external_id = external_id
        super().__init__(f"Transfer for {external_id} is already in progress")


class InvoiceUnconfirmed(TransferError):
    """Raised when an earlier attempt may have created the invoice without confirmation."""

    code = "invoice_unconfirmed"
    status_code = 409

    def __init__(self, record: TransferRecord):
        self.external_id = record.external_id
        super().__init__(
            f"Invoice for {record.external_id} may already exist in Kledo and needs "
            f"manual reconciliation: {record.error}"
        )


class NoFinanceAccount(TransferError):
    """Raised when no active finance account can be used for invoice lines."""

    code = "no_finance_account"


class ContactResolutionFailed(TransferError):
    """Raised when no customer contact could be found or created."""

    code = "contact_resolution_failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_name_collision(error: UpstreamError) -> bool:
    """Kledo rejects duplicate contact names with a validation error on ``name``."""
    if error.status_code not in (400, 409, 422):
        return False
    body = error.body
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, dict) and "name" in errors:
            return True
        body = body.get("message") or body
    text = str(body).lower()
    return "name" in text or "nama" in text


def _pick_email_match(
    candidates: list[AccountingContact], email: str
) -> Optional[AccountingContact]:
    """
    Choose the contact to bill for ``email`` from a free-text search result.

    Only a contact whose email equals ``email`` (case-insensitive) is reused,
    preferring customer-typed contacts over untyped ones. A customer without
    any email is the fallback. Contacts typed as non-customers and contacts
    carrying a different email are never used.
    """
    wanted = email.strip().lower()
    exact = [
        c
        for c in candidates
        if c.email and c.email.strip().lower() == wanted and c.is_customer is not False
    ]
    if exact:
        return next((c for c in exact if c.is_customer), exact[0])
    return next((c for c in candidates if c.is_customer and not c.email), None)


class TransferOrchestrator:
    """
    Syncs gateway transactions into the accounting platform.

    Attributes:
        kledo: Accounting API client
        storage: Ledger and settings storage
        xendit: Gateway client used for batch syncs
        default_contact_group_name: Group created when none exists
        default_contact_name: Contact used for payers without an email
        invoice_due_days: Due date offset from the transaction date
    """

    def __init__(
        self,
        kledo: KledoClient,
        storage: StorageBackend,
        xendit: Optional[XenditClient] = None,
        default_contact_group_name: str = "Customers",
        default_contact_name: str = "Xendit Customer",
        invoice_due_days: int = 30,
        stale_claim_seconds: int = 900,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.kledo = kledo
        self.storage = storage
        self.xendit = xendit
        self.default_contact_group_name = default_contact_group_name
        self.default_contact_name = default_contact_name
        self.invoice_due_days = invoice_due_days
        self.stale_claim_seconds = stale_claim_seconds
        self._clock = clock

        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_refs: dict[str, int] = {}

    # =========================================================================
    # Single transaction
    # =========================================================================

    async def sync_transaction(self, transaction: ExternalTransaction) -> AccountingInvoice:
        """
        Mirror one paid transaction as an invoice plus payment.

        Returns:
            The created invoice, or the stored one if this external id was
            already synced

        Raises:
            TransactionNotPaid: Status is not PAID/SETTLED (nothing is written)
            TransferInProgress: Another attempt holds the claim
            InvoiceUnconfirmed: An earlier attempt left the invoice unconfirmed
            ContactResolutionFailed: No customer contact could be resolved
            NoFinanceAccount: No usable finance account
            AuthRequired: The accounting platform is not connected
            UpstreamError, UpstreamTimeout: Invoice creation failed upstream
            MalformedResponse: Kledo accepted the invoice but its reply was
                unreadable; the ledger row is left ``unconfirmed``
        """
        if not transaction.is_paid:
            raise TransactionNotPaid(transaction)

        key = transaction.external_id
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_refs[key] = self._lock_refs.get(key, 0) + 1
        try:
            async with lock:
                return await self._sync_claimed(transaction)
        finally:
            self._lock_refs[key] -= 1
            if self._lock_refs[key] == 0:
                del self._lock_refs[key]
                self._locks.pop(key, None)

    async def _sync_claimed(self, transaction: ExternalTransaction) -> AccountingInvoice:
        log = logger.bind(transaction_id=transaction.id, external_id=transaction.external_id)

        claimed, record = self.storage.claim_transfer(
            transaction, stale_after_seconds=self.stale_claim_seconds
        )
        if not claimed:
            if record.status in _TERMINAL_STATUSES:
                log.info("transfer_already_synced", invoice_id=record.invoice_id)
                return self._stored_invoice(record)
            if record.status == TransferStatus.UNCONFIRMED:
                log.warning("transfer_unconfirmed", error=record.error)
                raise InvoiceUnconfirmed(record)
            raise TransferInProgress(transaction.external_id)

        log.info("transfer_started", amount=transaction.amount, attempt=record.attempts)

        try:
            contact = await self._resolve_contact(transaction)
            account = await self._resolve_finance_account()
        except Exception as e:
            self._record_failure(log, transaction.external_id, e)
            raise

        try:
            invoice = await self._create_invoice(transaction, contact, account)
        except MalformedResponse as e:
            # The invoice may exist upstream; the row is never claimed again
            self._record_failure(log, transaction.external_id, e, TransferStatus.UNCONFIRMED)
            raise
        except Exception as e:
            self._record_failure(log, transaction.external_id, e)
            raise

        status = TransferStatus.SYNCED
        error = None
        try:
            await self.kledo.create_payment(
                invoice.id,
                transaction.amount,
                self._transaction_date(transaction),
                memo=f"Xendit payment {transaction.id}",
            )
            invoice = invoice.model_copy(update={"status": InvoiceStatus.PAID})
        except ConnectorError as e:
            # Invoice stays unpaid for manual reconciliation
            log.error("payment_record_failed", invoice_id=invoice.id, error=str(e))
            status = TransferStatus.PAYMENT_FAILED
            error = f"Payment not recorded: {e}"

        self.storage.complete_transfer(
            transaction.external_id,
            status.value,
            invoice.id,
            contact.id,
            account.id,
            invoice.model_dump(mode="json"),
            error=error,
        )
        log.info("transfer_completed", invoice_id=invoice.id, status=status.value)
        return invoice

    def _record_failure(
        self,
        log,
        external_id: str,
        error: Exception,
        status: TransferStatus = TransferStatus.FAILED,
    ) -> None:
        log.error(
            "transfer_failed",
            error=str(error),
            error_type=type(error).__name__,
            ledger_status=status.value,
        )
        try:
            self.storage.fail_transfer(
                external_id, f"{type(error).__name__}: {error}", status=status.value
            )
        except StorageError as e:
            logger.error("transfer_failure_not_recorded", external_id=external_id, error=str(e))

    @staticmethod
    def _stored_invoice(record: TransferRecord) -> AccountingInvoice:
        if record.invoice:
            return AccountingInvoice.model_validate(record.invoice)
        return AccountingInvoice(
            id=record.invoice_id,
            contact_id=record.contact_id or 0,
            ref_number=record.external_id,
            total=record.amount,
        )

    def _transaction_date(self, transaction: ExternalTransaction) -> date:
        moment = transaction.paid_at or transaction.created_at or self._clock()
        return moment.date()

    # =========================================================================
    # Contact resolution
    # =========================================================================

    async def _resolve_contact(self, transaction: ExternalTransaction) -> AccountingContact:
        email = transaction.payer_email
        try:
            if email:
                candidates = await self.kledo.find_contact_by_email(email)
                match = _pick_email_match(candidates, email)
                if match is not None:
                    return match
                name = email.split("@")[0] or email
            else:
                name = self.default_contact_name
                candidates = await self.kledo.search_contacts(name)
                for contact in candidates:
                    if contact.is_customer is not False and contact.name.lower() == name.lower():
                        return contact

            group = await self._resolve_contact_group()
            return await self._create_contact(name, email, group, transaction.external_id)

        except UpstreamError as e:
            raise ContactResolutionFailed(
                f"Could not resolve a customer contact for {email or name}: {e}"
            ) from e

    async def _create_contact(
        self,
        name: str,
        email: Optional[str],
        group: ContactGroup,
        external_id: str,
    ) -> AccountingContact:
        try:
            return await self.kledo.create_contact(name, email, group.id)
        except UpstreamError as e:
            if not _is_name_collision(e):
                raise
            alternate = f"{name} ({email or external_id})"
            logger.info("contact_name_collision", name=name, retry_name=alternate)
            return await self.kledo.create_contact(alternate, email, group.id)

    async def _resolve_contact_group(self) -> ContactGroup:
        groups = [g for g in await self.kledo.list_contact_groups() if g.active]
        for group in groups:
            if any(keyword in group.name.lower() for keyword in CUSTOMER_GROUP_KEYWORDS):
                return group
        if groups:
            return groups[0]
        return await self.kledo.create_contact_group(self.default_contact_group_name)

    # =========================================================================
    # Finance account resolution
    # =========================================================================

    async def _resolve_finance_account(self) -> FinanceAccount:
        configured = self.storage.read_setting(FINANCE_ACCOUNT_SETTING)
        if configured:
            account = None
            try:
                account = await self.kledo.get_finance_account(int(configured))
            except ValueError:
                logger.warning("configured_finance_account_invalid", value=configured)
            if account is not None and account.active:
                return account
            logger.warning("configured_finance_account_unusable", account_id=configured)

        accounts = [a for a in await self.kledo.list_finance_accounts() if a.active]
        for account in accounts:
            haystack = " ".join(filter(None, [account.name, account.type, account.category])).lower()
            if any(keyword in haystack for keyword in REVENUE_ACCOUNT_KEYWORDS):
                return account
        if accounts:
            return accounts[0]
        raise NoFinanceAccount("No active finance account found in Kledo")

    async def configure_finance_account(self, account_id: int) -> FinanceAccount:
        """
        Validate and persist the preferred finance account.

        Raises:
            NoFinanceAccount: If the account does not exist or is archived
        """
        account = await self.kledo.get_finance_account(account_id)
        if account is None or not account.active:
            raise NoFinanceAccount(f"Finance account {account_id} not found or inactive")

        self.storage.write_setting(FINANCE_ACCOUNT_SETTING, str(account.id))
        logger.info("finance_account_configured", account_id=account.id, name=account.name)
        return account

    # =========================================================================
    # Invoice
    # =========================================================================

    async def _create_invoice(
        self,
        transaction: ExternalTransaction,
        contact: AccountingContact,
        account: FinanceAccount,
    ) -> AccountingInvoice:
        trans_date = self._transaction_date(transaction)
        item = InvoiceItem(
            finance_account_id=account.id,
            description=transaction.description or f"Payment via Xendit ({transaction.external_id})",
            qty=1,
            price=transaction.amount,
        )

        memo = f"Xendit invoice {transaction.id}, external id {transaction.external_id}"
        if transaction.payment_method:
            memo += f", paid via {transaction.payment_method}"

        return await self.kledo.create_invoice(
            contact_id=contact.id,
            items=[item],
            ref_number=transaction.external_id,
            trans_date=trans_date,
            due_date=trans_date + timedelta(days=self.invoice_due_days),
            memo=memo,
        )

    # =========================================================================
    # Batch
    # =========================================================================

    async def sync_recent(self, limit: int = 25) -> SyncReport:
        """
        Fetch recent paid gateway transactions and sync each one.

        Per-transaction failures are collected in the report. AuthRequired
        stops the batch: the failing transaction and every remaining one are
        reported as errors and ``success`` is False.
        """
        if self.xendit is None:
            raise RuntimeError("Batch sync requires a gateway client")

        transactions = [
            tx
            for tx in await self.xendit.list_invoices(limit=limit, statuses=sorted(PAID_STATUSES))
            if tx.is_paid
        ]
        ledger = self.storage.read_transfer_statuses([tx.external_id for tx in transactions])

        done = {s.value for s in _TERMINAL_STATUSES}

        report = SyncReport()
        for index, transaction in enumerate(transactions):
            report.processed += 1
            if ledger.get(transaction.external_id) in done:
                report.skipped += 1
                continue

            try:
                await self.sync_transaction(transaction)
                report.successful += 1
            except AuthRequired as e:
                logger.error(
                    "batch_sync_aborted",
                    transaction_id=transaction.id,
                    remaining=len(transactions) - index - 1,
                    error=str(e),
                )
                report.success = False
                report.errors.append(SyncError(transaction_id=transaction.id, error=str(e)))
                for remaining in transactions[index + 1 :]:
                    report.processed += 1
                    if ledger.get(remaining.external_id) in done:
                        report.skipped += 1
                        continue
                    report.errors.append(
                        SyncError(transaction_id=remaining.id, error=f"Not attempted: {e}")
                    )
                break
            except Exception as e:
                logger.warning(
                    "batch_sync_transaction_failed",
                    transaction_id=transaction.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                report.errors.append(SyncError(transaction_id=transaction.id, error=str(e)))

        logger.info(
            "batch_sync_completed",
            success=report.success,
            processed=report.processed,
            successful=report.successful,
            skipped=report.skipped,
            failed=len(report.errors),
        )
        return report
