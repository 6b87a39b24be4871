"""
Webhook handler for Xendit invoice callbacks.

Xendit calls the webhook endpoint when an invoice changes state. Each delivery
carries the account's callback verification token in the X-Callback-Token
header.

Webhook flow:
1. Compare X-Callback-Token with the configured token (constant time)
2. Parse the body into an ExternalTransaction
3. PAID/SETTLED: hand over to the TransferOrchestrator
4. Other statuses: acknowledge without syncing
"""

import hmac
import json
from typing import Any, Optional

import structlog
from pydantic import BaseModel, ValidationError

from ledgerbridge.models.transactions import ExternalTransaction
from ledgerbridge.services.transfer_service import TransferOrchestrator

logger = structlog.get_logger()

SIGNATURE_HEADER = "x-callback-token"


class SignatureMismatch(Exception):
    """Raised when the callback token is missing or wrong."""

    code = "signature_mismatch"
    status_code = 401


class MalformedPayload(Exception):
    """Raised when the webhook body is not a valid gateway event."""

    code = "malformed_payload"
    status_code = 400


class WebhookResult(BaseModel):
    """HTTP status and JSON body returned to the gateway."""

    status_code: int
    body: dict[str, Any]


class XenditWebhookHandler:
    """
    Verifies and dispatches Xendit invoice callbacks.

    Attributes:
        webhook_token: Callback verification token from the Xendit dashboard
        orchestrator: Syncs paid transactions into the accounting platform
    """

    def __init__(self, webhook_token: str, orchestrator: TransferOrchestrator):
        self.webhook_token = webhook_token
        self.orchestrator = orchestrator

        logger.info("webhook_handler_initialized", has_webhook_token=bool(webhook_token))

    def verify_signature(self, signature_header: Optional[str]) -> None:
        """
        Check the callback token.

        An unset webhook token rejects every delivery.

        Raises:
            SignatureMismatch: If the header is missing or does not match
        """
        if not self.webhook_token or not signature_header:
            raise SignatureMismatch("Missing callback token")

        if not hmac.compare_digest(
            self.webhook_token.encode("utf-8"), signature_header.encode("utf-8")
        ):
            raise SignatureMismatch("Invalid callback token")

    @staticmethod
    def parse_payload(raw_body: bytes) -> ExternalTransaction:
        """
        Parse a webhook body.

        Raises:
            MalformedPayload: Invalid JSON or missing/invalid required fields
        """
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedPayload(f"Body is not valid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise MalformedPayload("Body must be a JSON object")

        try:
            return ExternalTransaction.model_validate(payload)
        except ValidationError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
            raise MalformedPayload(f"Invalid fields: {', '.join(fields)}") from e

    async def handle(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookResult:
        """
        Process one delivery.

        Sync failures are reported with status 200 so the gateway does not
        keep retrying a delivery that was received correctly.

        Args:
            raw_body: Raw request body
            signature_header: X-Callback-Token header value

        Returns:
            WebhookResult to send back
        """
        try:
            self.verify_signature(signature_header)
        except SignatureMismatch as e:
            logger.warning("webhook_signature_rejected", reason=str(e))
            return WebhookResult(
                status_code=e.status_code,
                body={"success": False, "error": e.code, "detail": str(e)},
            )

        try:
            transaction = self.parse_payload(raw_body)
        except MalformedPayload as e:
            logger.warning("webhook_payload_rejected", reason=str(e))
            return WebhookResult(
                status_code=e.status_code,
                body={"success": False, "error": e.code, "detail": str(e)},
            )

        log = logger.bind(transaction_id=transaction.id, external_id=transaction.external_id)
        log.info(
            "webhook_received",
            status=transaction.status,
            amount=transaction.amount,
            currency=transaction.currency,
        )

        if not transaction.is_paid:
            log.info("webhook_acknowledged_without_sync", status=transaction.status)
            return WebhookResult(
                status_code=200,
                body={
                    "success": True,
                    "message": f"Status {transaction.status} acknowledged; nothing to sync",
                    "transaction_id": transaction.id,
                },
            )

        try:
            invoice = await self.orchestrator.sync_transaction(transaction)
        except Exception as e:
            log.error("webhook_sync_failed", error=str(e), error_type=type(e).__name__)
            return WebhookResult(
                status_code=200,
                body={
                    "success": False,
                    "transaction_id": transaction.id,
                    "error": str(e),
                },
            )

        log.info("webhook_synced", invoice_id=invoice.id)
        return WebhookResult(
            status_code=200,
            body={
                "success": True,
                "transaction_id": transaction.id,
                "invoice_id": invoice.id,
                "amount": transaction.amount,
                "status": transaction.status,
            },
        )
