"""
Xendit invoice API client (read-only).

Used by the manual sync trigger and the transactions dashboard endpoint.
"""

import json
from typing import Iterable, Optional

import httpx
import structlog
from pydantic import ValidationError

from ledgerbridge.connectors.http import send_request
from ledgerbridge.models.transactions import ExternalTransaction

logger = structlog.get_logger()

SERVICE_NAME = "xendit"


class XenditClient:
    """
    Xendit API client authenticated with the secret key over HTTP Basic auth.

    Attributes:
        base_url: API base URL, e.g. https://api.xendit.co
        timeout: Per-call timeout in seconds
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        secret_key: str,
        base_url: str = "https://api.xendit.co",
        timeout: Optional[float] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
    ):
        self._http_client = http_client
        self._secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self._secret_key)

    async def list_invoices(
        self, limit: int = 50, statuses: Optional[Iterable[str]] = None
    ) -> list[ExternalTransaction]:
        """
        List recent invoices, newest first.

        Entries that fail validation are skipped and logged.

        Args:
            limit: Maximum invoices to return
            statuses: Only return invoices in these gateway statuses

        Raises:
            UpstreamError: On a non-2xx response
            UpstreamTimeout: If the request timed out
        """
        params: dict[str, str] = {"limit": str(limit)}
        if statuses:
            params["statuses"] = json.dumps([s.upper() for s in statuses])

        response = await send_request(
            self._http_client,
            SERVICE_NAME,
            "GET",
            f"{self.base_url}/v2/invoices",
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            timeout=self.timeout,
            params=params,
            auth=(self._secret_key, ""),
            headers={"Accept": "application/json"},
        )

        payload = response.json()
        if isinstance(payload, dict):
            payload = payload.get("data") or []

        transactions = []
        for raw in payload:
            try:
                transactions.append(ExternalTransaction.model_validate(raw))
            except ValidationError as e:
                logger.warning(
                    "xendit_invoice_skipped",
                    invoice_id=raw.get("id") if isinstance(raw, dict) else None,
                    error=str(e),
                )

        logger.info("xendit_invoices_listed", count=len(transactions), limit=limit)
        return transactions
