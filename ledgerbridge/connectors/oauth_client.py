"""
OAuth2 authorization-code client for the Kledo accounting platform.

Handles the two token endpoint grants Kledo supports:
- authorization_code: after the user approves the app in the browser
- refresh_token: when the access token is about to expire

Token persistence and refresh serialization live in TokenManager; this
module only talks to the token endpoint.
"""

from typing import Any, Optional
from urllib.parse import urlencode

import httpx
import structlog

from ledgerbridge.auth.state import generate_state
from ledgerbridge.connectors.errors import ConnectorError, UpstreamError
from ledgerbridge.connectors.http import send_request
from ledgerbridge.models.tokens import OAuthTokenSet

logger = structlog.get_logger()


class TokenExchangeFailed(ConnectorError):
    """Raised when the authorization code cannot be exchanged for tokens."""

    code = "token_exchange_failed"

    def __init__(self, status_code: int, body: Any):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Token exchange failed with status {status_code}: {body}")


class TokenRefreshFailed(ConnectorError):
    """Raised when a refresh token is rejected. Terminal: the user must reconnect."""

    code = "token_refresh_failed"

    def __init__(self, status_code: int, body: Any):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Token refresh failed with status {status_code}: {body}")


class KledoOAuthClient:
    """
    Kledo OAuth2 client.

    Attributes:
        client_id: Kledo OAuth2 client ID
        client_secret: Kledo OAuth2 client secret
        redirect_uri: Registered callback URL
        authorize_url: Browser-facing authorization endpoint
        token_url: Token endpoint
        scope: Requested scope (Kledo expects an empty string)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        authorize_url: str,
        token_url: str,
        scope: str = "",
        timeout: Optional[float] = None,
    ):
        self._http_client = http_client
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.scope = scope
        self.timeout = timeout

        logger.info(
            "kledo_oauth_client_initialized",
            token_url=token_url,
            has_credentials=bool(client_id and client_secret),
        )

    @property
    def is_configured(self) -> bool:
        """True when client credentials and redirect URI are set."""
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    @staticmethod
    def new_state() -> str:
        """Issue a fresh unguessable CSRF state value."""
        return generate_state()

    def build_authorization_url(self, state: str) -> str:
        """
        Build the authorization-request URL the browser is redirected to.

        Args:
            state: Fresh CSRF state bound to the browser via signed cookie

        Returns:
            Complete authorization URL
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> OAuthTokenSet:
        """
        Exchange an authorization code for a token set.

        Raises:
            TokenExchangeFailed: On non-2xx response or malformed token body
            UpstreamTimeout: If the token endpoint does not answer in time
        """
        data = {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "code": code,
        }

        try:
            token_data = await self._post_token(data)
            tokens = OAuthTokenSet.from_token_response(token_data)
        except UpstreamError as e:
            logger.error("oauth_code_exchange_failed", status_code=e.status_code, error=e.body)
            raise TokenExchangeFailed(e.status_code, e.body) from e
        except (KeyError, ValueError) as e:
            logger.error("oauth_code_exchange_malformed", error=str(e))
            raise TokenExchangeFailed(200, f"malformed token response: {e}") from e

        logger.info(
            "oauth_code_exchanged",
            token_type=tokens.token_type,
            expires_at=tokens.expires_at.isoformat() if tokens.expires_at else None,
            has_refresh_token=bool(tokens.refresh_token),
        )
        return tokens

    async def refresh(self, refresh_token: str) -> OAuthTokenSet:
        """
        Exchange a refresh token for a new token set.

        Raises:
            TokenRefreshFailed: On non-2xx response or malformed token body
            UpstreamTimeout: If the token endpoint does not answer in time
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": self.scope,
        }

        try:
            token_data = await self._post_token(data)
            tokens = OAuthTokenSet.from_token_response(
                token_data, previous_refresh_token=refresh_token
            )
        except UpstreamError as e:
            logger.error("token_refresh_failed", status_code=e.status_code, error=e.body)
            raise TokenRefreshFailed(e.status_code, e.body) from e
        except (KeyError, ValueError) as e:
            logger.error("token_refresh_malformed", error=str(e))
            raise TokenRefreshFailed(200, f"malformed token response: {e}") from e

        logger.info(
            "tokens_refreshed",
            expires_at=tokens.expires_at.isoformat() if tokens.expires_at else None,
        )
        return tokens

    async def _post_token(self, data: dict[str, str]) -> dict[str, Any]:
        response = await send_request(
            self._http_client,
            "kledo",
            "POST",
            self.token_url,
            data=data,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        return response.json()
