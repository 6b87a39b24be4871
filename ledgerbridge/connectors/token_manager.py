"""
Access token lifecycle for the Kledo connection.

Hands out a valid access token, refreshing it first when it is about to
expire. Refreshes are single-flight: concurrent callers wait on one lock and
reuse whatever the first refresh produced.
"""

import asyncio
from datetime import timedelta
from typing import Any, Optional

import structlog

from ledgerbridge.connectors.errors import AuthRequired
from ledgerbridge.connectors.oauth_client import KledoOAuthClient, TokenRefreshFailed
from ledgerbridge.models.tokens import OAuthTokenSet
from ledgerbridge.storage.token_store import TokenStore

logger = structlog.get_logger()

REFRESH_LEEWAY = timedelta(minutes=5)


class TokenManager:
    """
    Owns the in-process view of the current token set.

    Attributes:
        token_store: Durable token persistence
        oauth_client: Token endpoint client used for refreshes
        leeway: Refresh this long before ``expires_at``
    """

    def __init__(
        self,
        token_store: TokenStore,
        oauth_client: KledoOAuthClient,
        leeway: timedelta = REFRESH_LEEWAY,
    ):
        self.token_store = token_store
        self.oauth_client = oauth_client
        self.leeway = leeway
        self._lock = asyncio.Lock()

    async def get_access_token(self) -> OAuthTokenSet:
        """
        Return a token set whose access token is usable now.

        Raises:
            AuthRequired: If nothing is stored or the refresh was rejected
        """
        tokens = self.token_store.load()
        if tokens is None:
            raise AuthRequired("Accounting platform is not connected")

        if not tokens.is_expiring(self.leeway):
            return tokens

        async with self._lock:
            # Another caller may have refreshed while we waited
            current = self.token_store.load()
            if current is None:
                raise AuthRequired("Accounting platform is not connected")
            if not current.is_expiring(self.leeway):
                return current
            return await self._refresh(current)

    async def force_refresh(self, stale: Optional[OAuthTokenSet] = None) -> OAuthTokenSet:
        """
        Refresh after the API rejected ``stale`` with 401.

        If the stored token already differs from ``stale`` another caller
        refreshed it, and the stored one is returned without a second refresh.
        """
        async with self._lock:
            current = self.token_store.load()
            if current is None:
                raise AuthRequired("Accounting platform is not connected")
            if stale is not None and current.access_token != stale.access_token:
                return current
            return await self._refresh(current)

    async def _refresh(self, tokens: OAuthTokenSet) -> OAuthTokenSet:
        if not tokens.refresh_token:
            logger.warning("token_refresh_unavailable", reason="no_refresh_token")
            self.token_store.clear()
            raise AuthRequired("Access token expired and no refresh token is stored")

        try:
            refreshed = await self.oauth_client.refresh(tokens.refresh_token)
        except TokenRefreshFailed as e:
            logger.warning("token_refresh_rejected", status_code=e.status_code)
            self.token_store.clear()
            raise AuthRequired("Refresh token rejected; reconnect the accounting platform") from e

        self.token_store.save(refreshed)
        return refreshed

    def store_exchanged(self, tokens: OAuthTokenSet) -> None:
        """Persist a token set obtained from the authorization-code exchange."""
        self.token_store.save(tokens)
        logger.info("kledo_connected", has_refresh_token=bool(tokens.refresh_token))

    def disconnect(self) -> bool:
        """Forget the stored token set. Returns True if one existed."""
        cleared = self.token_store.clear()
        logger.info("kledo_disconnected", had_tokens=cleared)
        return cleared

    def status(self) -> dict[str, Any]:
        """Connection summary safe to show in the dashboard (no secrets)."""
        tokens = self.token_store.load()
        return {
            "connected": tokens is not None,
            "has_access_token": bool(tokens and tokens.access_token),
            "has_refresh_token": bool(tokens and tokens.refresh_token),
            "token_type": tokens.token_type if tokens else None,
            "expires_at": tokens.expires_at.isoformat() if tokens and tokens.expires_at else None,
        }
