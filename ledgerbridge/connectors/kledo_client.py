"""
Kledo finance API client.

Typed wrapper over the Kledo REST API used by the transfer orchestrator and
the dashboard endpoints:
- Contacts and contact groups (customer resolution)
- Finance accounts (chart of accounts)
- Sales invoices and invoice payments
- User profile (connection test)

Every request carries a bearer token from the TokenManager. A 401 response
triggers one forced refresh and a single replay of the request.
"""

from datetime import date
from typing import Any, Callable, Optional, TypeVar

import httpx
import structlog

from ledgerbridge.config import AccountingApiContract
from ledgerbridge.connectors.errors import MalformedResponse, UpstreamError
from ledgerbridge.connectors.http import send_request
from ledgerbridge.connectors.token_manager import TokenManager
from ledgerbridge.models.accounting import (
    AccountingContact,
    AccountingInvoice,
    AccountingPayment,
    ContactGroup,
    FinanceAccount,
    InvoiceItem,
)
from ledgerbridge.models.enums import ContactType

logger = structlog.get_logger()

SERVICE_NAME = "kledo"

T = TypeVar("T")


def _extract_items(payload: Any) -> list[dict[str, Any]]:
    """Unwrap list responses: bare list, {"data": [...]}, {"data": {"data": [...]}}."""
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list):
            return [item for item in data if isinstance(item, dict)]
        if isinstance(data, dict) and isinstance(data.get("data"), list):
            return [item for item in data["data"] if isinstance(item, dict)]
    return []


def _extract_object(payload: Any) -> dict[str, Any]:
    """Unwrap single-object responses: {"data": {...}} or the bare object."""
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, dict) and "id" in data:
            return data
        return payload
    return {}


def _parse(factory: Callable[..., T], payload: Any, what: str, **kwargs: Any) -> T:
    """Build a model from a 2xx body; unreadable bodies become MalformedResponse."""
    try:
        return factory(payload, **kwargs)
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedResponse(
            SERVICE_NAME, payload, f"Kledo returned an unreadable {what}: {e!r}"
        ) from e


def _money(value: float) -> Any:
    """Send integral amounts as ints; Kledo rejects 100000.0 for IDR in some fields."""
    if float(value).is_integer():
        return int(value)
    return value


class KledoClient:
    """
    Kledo finance API client.

    Attributes:
        base_url: API base URL, e.g. https://app.kledo.com/api/v1
        contract: Versioned endpoint paths
        timeout: Per-call timeout in seconds
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_manager: TokenManager,
        base_url: str,
        contract: Optional[AccountingApiContract] = None,
        timeout: Optional[float] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
    ):
        self._http_client = http_client
        self.token_manager = token_manager
        self.base_url = base_url.rstrip("/")
        self.contract = contract or AccountingApiContract()
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

        logger.info(
            "kledo_client_initialized",
            base_url=self.base_url,
            contract_version=self.contract.version,
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        Make an authenticated API request.

        Args:
            method: HTTP method
            path: Path relative to the base URL
            params: Query parameters
            json_data: JSON request body

        Returns:
            Parsed JSON response (empty dict for empty bodies)

        Raises:
            AuthRequired: If no token is available or refresh failed
            UpstreamError: On a non-2xx response
            MalformedResponse: On a 2xx response whose body is not JSON
            UpstreamTimeout: If the request timed out
        """
        tokens = await self.token_manager.get_access_token()
        url = self._url(path)

        try:
            response = await self._send(method, url, tokens.authorization_header, params, json_data)
        except UpstreamError as e:
            if e.status_code != 401:
                raise
            logger.info("kledo_token_rejected", method=method, path=path)
            tokens = await self.token_manager.force_refresh(tokens)
            response = await self._send(method, url, tokens.authorization_header, params, json_data)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            logger.error(
                "kledo_response_unreadable",
                method=method,
                path=path,
                status_code=response.status_code,
            )
            raise MalformedResponse(
                SERVICE_NAME,
                response.text,
                f"Kledo answered {method} {path} with {response.status_code} and a non-JSON body",
                status_code=response.status_code,
            ) from e

    async def _send(
        self,
        method: str,
        url: str,
        authorization: str,
        params: Optional[dict[str, Any]],
        json_data: Optional[dict[str, Any]],
    ) -> httpx.Response:
        headers = {
            "Authorization": authorization,
            "Accept": "application/json",
            "X-APP": self.contract.app_header,
        }
        return await send_request(
            self._http_client,
            SERVICE_NAME,
            method,
            url,
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            timeout=self.timeout,
            headers=headers,
            params=params,
            json=json_data,
        )

    # =========================================================================
    # Contacts
    # =========================================================================

    async def search_contacts(self, term: str) -> list[AccountingContact]:
        """Free-text contact search; Kledo matches name, email and phone."""
        payload = await self._request(
            "GET", self.contract.contacts_path, params={"search": term, "per_page": 50}
        )
        contacts = [
            _parse(AccountingContact.from_api, item, "contact") for item in _extract_items(payload)
        ]
        logger.debug("kledo_contacts_found", count=len(contacts))
        return contacts

    async def find_contact_by_email(self, email: str) -> list[AccountingContact]:
        return await self.search_contacts(email)

    async def create_contact(
        self, name: str, email: Optional[str], group_id: Optional[int]
    ) -> AccountingContact:
        """Create a customer-type contact."""
        body: dict[str, Any] = {
            "name": name,
            "type_id": ContactType.CUSTOMER.value,
        }
        if email:
            body["email"] = email
        if group_id is not None:
            body["group_id"] = group_id

        payload = await self._request("POST", self.contract.contacts_path, json_data=body)
        data = _extract_object(payload)
        data.setdefault("name", name)
        data.setdefault("email", email)
        data.setdefault("group_id", group_id)
        data.setdefault("type_id", ContactType.CUSTOMER.value)

        contact = _parse(AccountingContact.from_api, data, "contact")
        logger.info("kledo_contact_created", contact_id=contact.id, group_id=group_id)
        return contact

    async def list_contact_groups(self) -> list[ContactGroup]:
        payload = await self._request("GET", self.contract.contact_groups_path)
        return [
            _parse(ContactGroup.from_api, item, "contact group") for item in _extract_items(payload)
        ]

    async def create_contact_group(self, name: str) -> ContactGroup:
        payload = await self._request(
            "POST", self.contract.contact_groups_path, json_data={"name": name}
        )
        data = _extract_object(payload)
        data.setdefault("name", name)
        group = _parse(ContactGroup.from_api, data, "contact group")
        logger.info("kledo_contact_group_created", group_id=group.id, name=name)
        return group

    # =========================================================================
    # Finance Accounts
    # =========================================================================

    async def list_finance_accounts(self) -> list[FinanceAccount]:
        payload = await self._request(
            "GET", self.contract.finance_accounts_path, params={"per_page": 200}
        )
        return [
            _parse(FinanceAccount.from_api, item, "finance account")
            for item in _extract_items(payload)
        ]

    async def get_finance_account(self, account_id: int) -> Optional[FinanceAccount]:
        """
        Read one finance account.

        Returns:
            The account, or None when Kledo answers 404
        """
        try:
            payload = await self._request(
                "GET", f"{self.contract.finance_accounts_path.rstrip('/')}/{account_id}"
            )
        except UpstreamError as e:
            if e.status_code == 404:
                return None
            raise
        data = _extract_object(payload)
        if "id" not in data:
            return None
        return _parse(FinanceAccount.from_api, data, "finance account")

    # =========================================================================
    # Invoices and Payments
    # =========================================================================

    async def create_invoice(
        self,
        contact_id: int,
        items: list[InvoiceItem],
        ref_number: str,
        trans_date: date,
        due_date: date,
        memo: Optional[str] = None,
    ) -> AccountingInvoice:
        """Create a sales invoice."""
        body: dict[str, Any] = {
            "contact_id": contact_id,
            "trans_date": trans_date.isoformat(),
            "due_date": due_date.isoformat(),
            "ref_number": ref_number,
            "items": [
                {
                    "finance_account_id": item.finance_account_id,
                    "desc": item.description,
                    "qty": _money(item.qty),
                    "price": _money(item.price),
                }
                for item in items
            ],
        }
        if memo:
            body["memo"] = memo

        payload = await self._request("POST", self.contract.invoices_path, json_data=body)
        invoice = _parse(
            AccountingInvoice.from_api,
            _extract_object(payload),
            "invoice",
            fallback_items=items,
            fallback_contact_id=contact_id,
            fallback_ref_number=ref_number,
        )
        logger.info("kledo_invoice_created", invoice_id=invoice.id, ref_number=ref_number)
        return invoice

    async def create_payment(
        self, invoice_id: int, amount: float, paid_on: date, memo: Optional[str] = None
    ) -> AccountingPayment:
        """Record a payment against an invoice."""
        body: dict[str, Any] = {
            "amount": _money(amount),
            "trans_date": paid_on.isoformat(),
        }
        if memo:
            body["memo"] = memo

        path = self.contract.invoice_payments_path.format(invoice_id=invoice_id)
        payload = await self._request("POST", path, json_data=body)
        data = _extract_object(payload)

        payment = AccountingPayment(
            id=data.get("id"),
            invoice_id=invoice_id,
            amount=amount,
            date=paid_on,
        )
        logger.info("kledo_payment_recorded", invoice_id=invoice_id, payment_id=payment.id)
        return payment

    # =========================================================================
    # Profile
    # =========================================================================

    async def get_profile(self) -> dict[str, Any]:
        """Fetch the authenticated user's profile."""
        payload = await self._request("GET", self.contract.profile_path)
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            return payload["data"]
        return payload if isinstance(payload, dict) else {"data": payload}
