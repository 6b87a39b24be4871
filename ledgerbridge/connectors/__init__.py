"""
External platform connectors for LedgerBridge.

This package talks to the two SaaS platforms the service bridges:
- Kledo: OAuth2 authorization-code flow, token lifecycle, finance API
- Xendit: invoice listing and invoice webhooks

Main Components:
    KledoOAuthClient: Token endpoint client (code exchange, refresh)
    TokenManager: Hands out valid access tokens, single-flight refresh
    KledoClient: Contacts, finance accounts, invoices and payments
    XenditClient: Read-only invoice listing

The webhook handler lives in ``ledgerbridge.connectors.webhook_handler`` and
is imported from there directly since it depends on the service layer.
"""

from ledgerbridge.connectors.errors import (
    AuthRequired,
    ConnectorError,
    UpstreamError,
    UpstreamTimeout,
)
from ledgerbridge.connectors.kledo_client import KledoClient
from ledgerbridge.connectors.oauth_client import (
    KledoOAuthClient,
    TokenExchangeFailed,
    TokenRefreshFailed,
)
from ledgerbridge.connectors.token_manager import TokenManager
from ledgerbridge.connectors.xendit_client import XenditClient

__all__ = [
    # Errors
    "ConnectorError",
    "AuthRequired",
    "UpstreamError",
    "UpstreamTimeout",
    # OAuth
    "KledoOAuthClient",
    "TokenExchangeFailed",
    "TokenRefreshFailed",
    "TokenManager",
    # API clients
    "KledoClient",
    "XenditClient",
]
