"""
Pytest configuration and shared fixtures for the LedgerBridge test suite.

Outbound HTTP never leaves the process: Kledo and Xendit are replaced by
FakePlatforms, an in-memory fake served through httpx.MockTransport. Storage
is a real DuckDB file under pytest's tmp_path.
"""

import json
import os
import re
import tempfile
import uuid as _uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Optional
from urllib.parse import parse_qs

import httpx
import pytest

# Set testing environment BEFORE importing the app
_test_db_path = os.path.join(
    tempfile.gettempdir(), f"ledgerbridge_test_{_uuid.uuid4().hex[:8]}.duckdb"
)
os.environ["TESTING"] = "true"
os.environ["DB_PATH"] = _test_db_path
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("LOG_LEVEL", "warning")

from ledgerbridge.connectors.kledo_client import KledoClient
from ledgerbridge.connectors.oauth_client import KledoOAuthClient
from ledgerbridge.connectors.token_manager import TokenManager
from ledgerbridge.connectors.webhook_handler import XenditWebhookHandler
from ledgerbridge.connectors.xendit_client import XenditClient
from ledgerbridge.models.tokens import OAuthTokenSet
from ledgerbridge.models.transactions import ExternalTransaction
from ledgerbridge.services.transfer_service import TransferOrchestrator
from ledgerbridge.storage.duckdb_storage import DuckDBStorage
from ledgerbridge.storage.token_store import TokenStore

KLEDO_AUTH_BASE = "https://kledo.test"
KLEDO_API_BASE = "https://kledo.test/api/v1"
XENDIT_API_BASE = "https://xendit.test"
WEBHOOK_TOKEN = "callback-token-123"
XENDIT_SECRET = "xnd_development_secret"


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_transaction(**overrides) -> ExternalTransaction:
    """Factory for a paid gateway transaction."""
    defaults: dict[str, Any] = dict(
        id="x1",
        external_id="ext1",
        status="PAID",
        amount=100000,
        currency="IDR",
        payer_email="c@d.com",
    )
    defaults.update(overrides)
    return ExternalTransaction(**defaults)


def make_tokens(expires_in: timedelta = timedelta(hours=1), **overrides) -> OAuthTokenSet:
    """Factory for a stored token set."""
    defaults: dict[str, Any] = dict(
        access_token="access-0",
        refresh_token="refresh-0",
        token_type="Bearer",
        expires_at=datetime.now(timezone.utc) + expires_in,
    )
    defaults.update(overrides)
    return OAuthTokenSet(**defaults)


def webhook_body(**overrides) -> bytes:
    """Raw webhook body as Xendit sends it."""
    payload: dict[str, Any] = {
        "id": "x1",
        "external_id": "ext1",
        "status": "PAID",
        "amount": 100000,
        "currency": "IDR",
        "payer_email": "c@d.com",
    }
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")


# ---------------------------------------------------------------------------
# Fake Kledo + Xendit
# ---------------------------------------------------------------------------


class FakePlatforms:
    """
    In-memory Kledo finance API and Xendit invoice API.

    Knobs:
        revoked_tokens: access tokens answered with 401
        token_error_status: token endpoint answers with this status
        taken_contact_names: names rejected as duplicates
        fail_payments: payment endpoint answers 500
        invoice_reply_body: invoice is stored but answered with this raw 200 body
        queued_statuses: (method, path) -> statuses returned before normal handling
    """

    def __init__(self):
        self.contacts: list[dict[str, Any]] = []
        self.groups: list[dict[str, Any]] = [{"id": 10, "name": "Customers", "active": True}]
        self.accounts: list[dict[str, Any]] = [
            {"id": 11, "name": "Kas", "category": {"name": "Kas & Bank"}, "is_archive": 0},
            {"id": 41, "name": "Pendapatan Jasa", "category": {"name": "Pendapatan"}, "is_archive": 0},
        ]
        self.invoices: list[dict[str, Any]] = []
        self.payments: list[dict[str, Any]] = []
        self.xendit_invoices: list[dict[str, Any]] = []

        self.requests: list[httpx.Request] = []
        self.token_grants: list[dict[str, str]] = []
        self.token_error_status: Optional[int] = None
        self.revoked_tokens: set[str] = set()
        self.taken_contact_names: set[str] = set()
        self.fail_payments = False
        self.invoice_reply_body: Optional[str] = None
        self.queued_statuses: dict[tuple[str, str], list[int]] = {}

        self._next_id = 100
        self._token_seq = 0

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    def count(self, method: str, path: str) -> int:
        """Number of requests whose path ends with ``path``."""
        return sum(
            1 for r in self.requests if r.method == method and r.url.path.endswith(path)
        )

    def sent_json(self, method: str, path: str) -> list[dict[str, Any]]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.method == method and r.url.path.endswith(path)
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        queued = self.queued_statuses.get((request.method, request.url.path))
        if queued:
            return httpx.Response(queued.pop(0), json={"message": "Service temporarily unavailable"})

        if request.url.host == "xendit.test":
            return self._xendit(request)

        path = request.url.path
        if path.startswith("/api/v1"):
            path = path[len("/api/v1"):]

        if path == "/oauth/token":
            return self._token(request)

        auth = request.headers.get("Authorization", "")
        token = auth[len("Bearer "):] if auth.startswith("Bearer ") else ""
        if not token or token in self.revoked_tokens:
            return httpx.Response(401, json={"message": "Unauthenticated."})

        return self._kledo(request, path)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode("utf-8")).items()}
        self.token_grants.append(form)

        if self.token_error_status is not None:
            return httpx.Response(
                self.token_error_status,
                json={"error": "invalid_grant", "message": "The refresh token is invalid."},
            )

        self._token_seq += 1
        return httpx.Response(
            200,
            json={
                "token_type": "Bearer",
                "expires_in": 3600,
                "access_token": f"access-{self._token_seq}",
                "refresh_token": f"refresh-{self._token_seq}",
            },
        )

    def _kledo(self, request: httpx.Request, path: str) -> httpx.Response:
        method = request.method

        if path == "/finance/contacts" and method == "GET":
            term = request.url.params.get("search", "").lower()
            matches = [
                c
                for c in self.contacts
                if term in (c.get("email") or "").lower() or term in c["name"].lower()
            ]
            return httpx.Response(200, json={"success": True, "data": {"data": matches, "total": len(matches)}})

        if path == "/finance/contacts" and method == "POST":
            body = json.loads(request.content)
            name = body["name"]
            if name in self.taken_contact_names or any(c["name"] == name for c in self.contacts):
                return httpx.Response(
                    422,
                    json={
                        "success": False,
                        "message": "The given data was invalid.",
                        "errors": {"name": ["The name has already been taken."]},
                    },
                )
            contact = {
                "id": self._id(),
                "name": name,
                "email": body.get("email"),
                "group_id": body.get("group_id"),
                "type_id": body.get("type_id"),
            }
            self.contacts.append(contact)
            return httpx.Response(200, json={"success": True, "data": contact})

        if path == "/finance/contactGroups" and method == "GET":
            return httpx.Response(200, json={"success": True, "data": self.groups})

        if path == "/finance/contactGroups" and method == "POST":
            body = json.loads(request.content)
            group = {"id": self._id(), "name": body["name"], "active": True}
            self.groups.append(group)
            return httpx.Response(200, json={"success": True, "data": group})

        if path == "/finance/accounts" and method == "GET":
            return httpx.Response(200, json={"success": True, "data": {"data": self.accounts}})

        match = re.fullmatch(r"/finance/accounts/(\d+)", path)
        if match and method == "GET":
            for account in self.accounts:
                if account["id"] == int(match.group(1)):
                    return httpx.Response(200, json={"success": True, "data": account})
            return httpx.Response(404, json={"message": "Not found"})

        if path == "/finance/invoices" and method == "POST":
            body = json.loads(request.content)
            invoice = {
                "id": self._id(),
                **body,
                "status_id": 1,
                "amount_after_tax": sum(i["qty"] * i["price"] for i in body["items"]),
            }
            self.invoices.append(invoice)
            if self.invoice_reply_body is not None:
                return httpx.Response(200, text=self.invoice_reply_body)
            return httpx.Response(200, json={"success": True, "data": invoice})

        match = re.fullmatch(r"/finance/invoices/(\d+)/payments", path)
        if match and method == "POST":
            if self.fail_payments:
                return httpx.Response(500, text="Server Error")
            body = json.loads(request.content)
            payment = {"id": self._id(), "invoice_id": int(match.group(1)), **body}
            self.payments.append(payment)
            return httpx.Response(200, json={"success": True, "data": payment})

        if path == "/user" and method == "GET":
            return httpx.Response(
                200,
                json={"success": True, "data": {"id": 1, "name": "Finance Owner", "email": "owner@example.com"}},
            )

        return httpx.Response(404, json={"message": f"No route for {method} {path}"})

    def _xendit(self, request: httpx.Request) -> httpx.Response:
        if not request.headers.get("Authorization", "").startswith("Basic "):
            return httpx.Response(401, json={"error_code": "INVALID_API_KEY"})

        if request.url.path == "/v2/invoices" and request.method == "GET":
            invoices = self.xendit_invoices
            statuses = request.url.params.get("statuses")
            if statuses:
                wanted = set(json.loads(statuses))
                invoices = [i for i in invoices if i["status"] in wanted]
            limit = int(request.url.params.get("limit", "50"))
            return httpx.Response(200, json=invoices[:limit])

        return httpx.Response(404, json={"error_code": "NOT_FOUND"})


def xendit_invoice(id: str, external_id: str, status: str = "PAID", amount: float = 50000, **extra) -> dict:
    """Xendit invoice listing entry."""
    invoice = {
        "id": id,
        "external_id": external_id,
        "status": status,
        "amount": amount,
        "currency": "IDR",
        "payer_email": f"{external_id}@example.com",
        "description": f"Order {external_id}",
        "created": "2026-10-01T08:00:00.000Z",
    }
    invoice.update(extra)
    return invoice


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def platforms() -> FakePlatforms:
    return FakePlatforms()


@pytest.fixture
def storage(tmp_path) -> DuckDBStorage:
    return DuckDBStorage(db_path=str(tmp_path / "ledgerbridge.duckdb"))


@pytest.fixture
def stack(platforms, storage) -> SimpleNamespace:
    """Fully wired service graph talking to FakePlatforms."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(platforms.handler))
    oauth_client = KledoOAuthClient(
        http_client,
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="http://testserver/oauth/callback",
        authorize_url=f"{KLEDO_AUTH_BASE}/oauth/authorize",
        token_url=f"{KLEDO_API_BASE}/oauth/token",
    )
    token_store = TokenStore(storage)
    token_manager = TokenManager(token_store, oauth_client)
    kledo = KledoClient(http_client, token_manager, base_url=KLEDO_API_BASE, backoff_seconds=0)
    xendit = XenditClient(http_client, secret_key=XENDIT_SECRET, base_url=XENDIT_API_BASE, backoff_seconds=0)
    orchestrator = TransferOrchestrator(kledo, storage, xendit=xendit)
    webhook = XenditWebhookHandler(WEBHOOK_TOKEN, orchestrator)

    return SimpleNamespace(
        http_client=http_client,
        oauth_client=oauth_client,
        token_store=token_store,
        token_manager=token_manager,
        kledo=kledo,
        xendit=xendit,
        orchestrator=orchestrator,
        webhook=webhook,
        storage=storage,
        platforms=platforms,
    )


@pytest.fixture
def connected(stack) -> SimpleNamespace:
    """Service graph with a valid Kledo token stored."""
    stack.token_store.save(make_tokens())
    return stack
