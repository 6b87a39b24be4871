"""
Integration tests for the LedgerBridge API.

The app runs with its real lifespan and DuckDB storage; only outbound HTTP is
replaced by FakePlatforms through an httpx.MockTransport.

Endpoints covered:
- System: health
- Webhook: Xendit invoice callbacks
- OAuth: authorize, callback, status, disconnect
- Sync: trigger, single, transfers
- Transactions: listing with sync status
- Accounting: finance accounts, profile, settings
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from ledgerbridge.config import get_settings
from ledgerbridge.main import create_app
from ledgerbridge.storage import get_storage
from tests.conftest import (
    KLEDO_API_BASE,
    KLEDO_AUTH_BASE,
    WEBHOOK_TOKEN,
    XENDIT_API_BASE,
    XENDIT_SECRET,
    make_tokens,
    webhook_body,
    xendit_invoice,
)

DASHBOARD_URL = "http://dashboard.test"


@pytest.fixture
def build_client(monkeypatch, tmp_path, platforms):
    """Factory for a TestClient wired to FakePlatforms; keyword args override env vars."""
    clients = []

    def build(**env):
        values = {
            "KLEDO_CLIENT_ID": "client-id",
            "KLEDO_CLIENT_SECRET": "client-secret",
            "KLEDO_REDIRECT_URI": "http://testserver/oauth/callback",
            "KLEDO_AUTH_BASE_URL": KLEDO_AUTH_BASE,
            "KLEDO_API_BASE_URL": KLEDO_API_BASE,
            "XENDIT_SECRET_KEY": XENDIT_SECRET,
            "XENDIT_API_BASE_URL": XENDIT_API_BASE,
            "XENDIT_WEBHOOK_TOKEN": WEBHOOK_TOKEN,
            "DB_PATH": str(tmp_path / "api.duckdb"),
            "HTTP_BACKOFF_SECONDS": "0",
            "DASHBOARD_URL": DASHBOARD_URL,
        }
        values.update(env)
        for key, value in values.items():
            monkeypatch.setenv(key, value)

        get_settings.cache_clear()
        get_storage.cache_clear()

        client = TestClient(create_app(http_transport=httpx.MockTransport(platforms.handler)))
        client.__enter__()
        clients.append(client)
        return client

    yield build

    for client in clients:
        client.__exit__(None, None, None)
    get_settings.cache_clear()
    get_storage.cache_clear()


@pytest.fixture
def client(build_client):
    return build_client()


@pytest.fixture
def connected_client(client):
    client.app.state.token_manager.store_exchanged(make_tokens())
    return client


def post_webhook(client, body=None, token=WEBHOOK_TOKEN):
    headers = {"Content-Type": "application/json"}
    if token is not None:
        headers["X-Callback-Token"] = token
    return client.post("/webhook", content=body or webhook_body(), headers=headers)


# =============================================================================
# System
# =============================================================================


def test_health(client):
    response = client.get("/health", headers={"X-Request-ID": "req-42"})

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Request-ID"] == "req-42"


# =============================================================================
# Webhook
# =============================================================================


class TestWebhook:
    def test_paid_invoice_is_synced(self, connected_client, platforms):
        response = post_webhook(connected_client)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["transaction_id"] == "x1"
        assert body["invoice_id"] == platforms.invoices[0]["id"]
        assert len(platforms.payments) == 1

    def test_redelivery_creates_no_second_invoice(self, connected_client, platforms):
        first = post_webhook(connected_client).json()
        second = post_webhook(connected_client).json()

        assert first["invoice_id"] == second["invoice_id"]
        assert len(platforms.invoices) == 1

    def test_missing_token(self, connected_client, platforms):
        response = post_webhook(connected_client, token=None)

        assert response.status_code == 401
        assert response.json()["error"] == "signature_mismatch"
        assert platforms.requests == []

    def test_wrong_token(self, connected_client, platforms):
        response = post_webhook(connected_client, token="forged")

        assert response.status_code == 401
        assert platforms.invoices == []

    def test_malformed_body(self, connected_client):
        response = post_webhook(connected_client, body=b'{"id": "x1"}')

        assert response.status_code == 400
        assert response.json()["error"] == "malformed_payload"

    def test_unpaid_status_is_acknowledged(self, connected_client, platforms):
        response = post_webhook(connected_client, body=webhook_body(status="EXPIRED"))

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert platforms.requests == []

    def test_sync_failure_still_200(self, client):
        response = post_webhook(client)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert "error" in body

    def test_unreadable_invoice_reply_still_200(self, connected_client, platforms):
        platforms.invoice_reply_body = "<html>ok</html>"

        first = post_webhook(connected_client)
        platforms.invoice_reply_body = None
        second = post_webhook(connected_client)

        assert first.status_code == 200
        assert first.json()["success"] is False
        assert second.status_code == 200
        assert second.json()["success"] is False
        assert len(platforms.invoices) == 1

        transfers = connected_client.get("/sync/transfers", params={"status": "unconfirmed"}).json()
        assert [t["external_id"] for t in transfers["transfers"]] == ["ext1"]

    def test_unset_webhook_token_rejects(self, build_client, platforms):
        client = build_client(XENDIT_WEBHOOK_TOKEN="")

        response = post_webhook(client, token="")

        assert response.status_code == 401


# =============================================================================
# OAuth
# =============================================================================


class TestOAuth:
    def _authorize(self, client):
        response = client.get("/oauth/authorize", follow_redirects=False)
        assert response.status_code == 302
        location = response.headers["location"]
        return location, parse_qs(urlparse(location).query)

    def test_authorize_redirects_with_state_cookie(self, client):
        location, params = self._authorize(client)

        assert location.startswith(f"{KLEDO_AUTH_BASE}/oauth/authorize?")
        assert params["client_id"] == ["client-id"]
        assert params["response_type"] == ["code"]
        assert params["state"][0]
        assert client.cookies.get("oauth_state")

    def test_authorize_not_configured(self, build_client):
        client = build_client(KLEDO_CLIENT_SECRET="")

        response = client.get("/oauth/authorize", follow_redirects=False)

        assert response.status_code == 500
        assert response.json()["error"] == "oauth_not_configured"

    def test_full_flow_connects(self, client, platforms):
        _, params = self._authorize(client)

        response = client.get(
            "/oauth/callback",
            params={"code": "auth-code", "state": params["state"][0]},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == f"{DASHBOARD_URL}/?auth=success"
        assert client.cookies.get("kledo_connected") == "true"
        assert platforms.token_grants[0]["code"] == "auth-code"

        status = client.get("/oauth/status").json()
        assert status["connected"] is True
        assert status["has_refresh_token"] is True
        assert "access-1" not in str(status)

    def test_callback_with_wrong_state(self, client, platforms):
        self._authorize(client)

        response = client.get(
            "/oauth/callback",
            params={"code": "auth-code", "state": "attacker-state"},
            follow_redirects=False,
        )

        query = parse_qs(urlparse(response.headers["location"]).query)
        assert query["error"] == ["invalid_state"]
        assert platforms.token_grants == []

    def test_callback_without_state_cookie(self, client, platforms):
        response = client.get(
            "/oauth/callback",
            params={"code": "auth-code", "state": "whatever"},
            follow_redirects=False,
        )

        query = parse_qs(urlparse(response.headers["location"]).query)
        assert query["error"] == ["invalid_state"]
        assert platforms.token_grants == []

    def test_callback_without_code(self, client):
        response = client.get("/oauth/callback", follow_redirects=False)

        query = parse_qs(urlparse(response.headers["location"]).query)
        assert query["error"] == ["no_code"]

    def test_callback_provider_error(self, client):
        response = client.get(
            "/oauth/callback",
            params={"error": "access_denied", "error_description": "User denied"},
            follow_redirects=False,
        )

        query = parse_qs(urlparse(response.headers["location"]).query)
        assert query["error"] == ["access_denied"]
        assert query["description"] == ["User denied"]

    def test_callback_exchange_rejected(self, client, platforms):
        _, params = self._authorize(client)
        platforms.token_error_status = 400

        response = client.get(
            "/oauth/callback",
            params={"code": "bad", "state": params["state"][0]},
            follow_redirects=False,
        )

        query = parse_qs(urlparse(response.headers["location"]).query)
        assert query["error"] == ["token_exchange_failed"]
        assert client.get("/oauth/status").json()["connected"] is False

    def test_status_disconnected(self, client):
        response = client.get("/oauth/status")

        assert response.status_code == 200
        assert response.json()["connected"] is False

    def test_disconnect(self, connected_client):
        response = connected_client.delete("/oauth/status")

        assert response.json() == {"success": True, "message": "Disconnected from Kledo"}
        assert connected_client.get("/oauth/status").json()["connected"] is False

        again = connected_client.delete("/oauth/status")
        assert again.json()["message"] == "Kledo was not connected"


# =============================================================================
# Sync
# =============================================================================


class TestSync:
    def test_trigger(self, connected_client, platforms):
        platforms.xendit_invoices = [
            xendit_invoice("inv-1", "order-1"),
            xendit_invoice("inv-2", "order-2", status="PENDING"),
        ]

        response = connected_client.post("/sync/trigger", params={"limit": 10})

        assert response.status_code == 200
        report = response.json()
        assert report["success"] is True
        assert report["processed"] == 1
        assert report["successful"] == 1
        assert report["errors"] == []

        again = connected_client.post("/sync/trigger").json()
        assert again["skipped"] == 1
        assert len(platforms.invoices) == 1

    def test_trigger_not_connected(self, client, platforms):
        platforms.xendit_invoices = [xendit_invoice("inv-1", "order-1")]

        response = client.post("/sync/trigger")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["processed"] == 1
        assert body["successful"] == 0
        assert [e["transaction_id"] for e in body["errors"]] == ["inv-1"]

    def test_trigger_without_xendit_key(self, build_client):
        client = build_client(XENDIT_SECRET_KEY="")

        assert client.post("/sync/trigger").status_code == 503

    def test_trigger_limit_validation(self, connected_client):
        assert connected_client.post("/sync/trigger", params={"limit": 0}).status_code == 422

    def test_single(self, connected_client, platforms):
        transaction = {
            "id": "x9",
            "external_id": "ext9",
            "status": "SETTLED",
            "amount": 75000,
            "payer_email": "buyer@example.com",
        }

        response = connected_client.post("/sync/single", json={"transaction": transaction})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["transaction_id"] == "x9"
        assert body["invoice_id"] == platforms.invoices[0]["id"]
        assert body["invoice"]["status"] == "paid"

    def test_single_not_paid(self, connected_client, platforms):
        transaction = {"id": "x9", "external_id": "ext9", "status": "PENDING", "amount": 75000}

        response = connected_client.post("/sync/single", json={"transaction": transaction})

        assert response.status_code == 400
        assert response.json()["error"] == "transaction_not_paid"
        assert platforms.requests == []

    def test_single_without_finance_account(self, connected_client, platforms):
        platforms.accounts = []

        response = connected_client.post(
            "/sync/single",
            json={"transaction": {"id": "x9", "external_id": "ext9", "status": "PAID", "amount": 1}},
        )

        assert response.status_code == 422
        assert response.json()["error"] == "no_finance_account"

    def test_transfers_history(self, connected_client, platforms):
        post_webhook(connected_client)
        platforms.accounts = []
        post_webhook(connected_client, body=webhook_body(id="x2", external_id="ext2"))

        all_rows = connected_client.get("/sync/transfers").json()
        failed = connected_client.get("/sync/transfers", params={"status": "failed"}).json()

        assert all_rows["count"] == 2
        assert failed["count"] == 1
        assert failed["transfers"][0]["external_id"] == "ext2"

    def test_transfers_bad_status(self, client):
        assert client.get("/sync/transfers", params={"status": "bogus"}).status_code == 422


# =============================================================================
# Transactions
# =============================================================================


class TestTransactions:
    def test_listing_with_summary_and_sync_status(self, connected_client, platforms):
        platforms.xendit_invoices = [
            xendit_invoice("inv-1", "order-1", amount=50000),
            xendit_invoice("inv-2", "order-2", status="SETTLED", amount=25000),
            xendit_invoice("inv-3", "order-3", status="PENDING"),
            xendit_invoice("inv-4", "order-4", status="EXPIRED"),
        ]
        post_webhook(
            connected_client,
            body=webhook_body(id="inv-1", external_id="order-1", amount=50000),
        )

        response = connected_client.get("/transactions", params={"limit": 20})

        assert response.status_code == 200
        body = response.json()
        assert body["summary"] == {
            "total": 4,
            "paid": 2,
            "pending": 1,
            "expired": 1,
            "paid_amount": 75000,
            "synced": 1,
        }
        statuses = {tx["external_id"]: tx["sync_status"] for tx in body["transactions"]}
        assert statuses["order-1"] == "synced"
        assert statuses["order-2"] == "not_synced"

    def test_failed_transfers_are_not_counted_as_synced(self, connected_client, platforms):
        platforms.xendit_invoices = [
            xendit_invoice("inv-1", "order-1"),
            xendit_invoice("inv-2", "order-2"),
        ]
        post_webhook(connected_client, body=webhook_body(id="inv-1", external_id="order-1"))
        platforms.accounts = []
        post_webhook(connected_client, body=webhook_body(id="inv-2", external_id="order-2"))

        body = connected_client.get("/transactions").json()

        assert body["summary"]["synced"] == 1
        statuses = {tx["external_id"]: tx["sync_status"] for tx in body["transactions"]}
        assert statuses == {"order-1": "synced", "order-2": "failed"}

    def test_upstream_failure_maps_to_502(self, client, platforms):
        platforms.queued_statuses[("GET", "/v2/invoices")] = [500, 500, 500]

        response = client.get("/transactions")

        assert response.status_code == 502
        assert response.json()["error"] == "upstream_error"


# =============================================================================
# Accounting
# =============================================================================


class TestAccounting:
    def test_accounts(self, connected_client, platforms):
        platforms.accounts.append({"id": 99, "name": "Old", "is_archive": 1})

        body = connected_client.get("/accounting/accounts").json()
        active = connected_client.get("/accounting/accounts", params={"active_only": True}).json()

        assert body["count"] == 3
        assert active["count"] == 2
        assert body["configured_account_id"] is None

    def test_accounts_not_connected(self, client):
        response = client.get("/accounting/accounts")

        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "error": "auth_required",
            "detail": response.json()["detail"],
        }

    def test_profile(self, connected_client):
        body = connected_client.get("/accounting/profile").json()

        assert body["success"] is True
        assert body["profile"]["name"] == "Finance Owner"

    def test_profile_upstream_error(self, connected_client, platforms):
        platforms.queued_statuses[("GET", "/api/v1/user")] = [500, 500, 500]

        response = connected_client.get("/accounting/profile")

        assert response.status_code == 502
        assert response.json()["error"] == "upstream_error"

    def test_configure_finance_account(self, connected_client, platforms):
        response = connected_client.put(
            "/accounting/settings/finance-account", json={"finance_account_id": 11}
        )

        assert response.status_code == 200
        assert response.json()["finance_account"]["id"] == 11

        settings = connected_client.get("/accounting/settings").json()["settings"]
        assert settings["finance_account_id"]["value"] == "11"
        accounts = connected_client.get("/accounting/accounts").json()
        assert accounts["configured_account_id"] == 11

        post_webhook(connected_client)
        assert platforms.invoices[0]["items"][0]["finance_account_id"] == 11

    def test_configure_unknown_account(self, connected_client):
        response = connected_client.put(
            "/accounting/settings/finance-account", json={"finance_account_id": 999}
        )

        assert response.status_code == 422
        assert response.json()["error"] == "no_finance_account"

    def test_configure_invalid_body(self, connected_client):
        response = connected_client.put(
            "/accounting/settings/finance-account", json={"finance_account_id": 0}
        )

        assert response.status_code == 422
