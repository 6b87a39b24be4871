"""
OAuth router - Kledo authorization-code flow and connection status.
"""

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from ledgerbridge.auth.state import STATE_COOKIE_NAME, InvalidState, sign_state, verify_state
from ledgerbridge.config import get_settings
from ledgerbridge.connectors.errors import ConnectorError
from ledgerbridge.connectors.oauth_client import KledoOAuthClient, TokenExchangeFailed
from ledgerbridge.connectors.token_manager import TokenManager
from ledgerbridge.dependencies import get_oauth_client, get_token_manager
from ledgerbridge.storage.duckdb_storage import StorageError
from ledgerbridge.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()

CONNECTED_COOKIE_NAME = "kledo_connected"
CONNECTED_COOKIE_MAX_AGE = 30 * 24 * 60 * 60


class OAuthStatusResponse(BaseModel):
    """Kledo connection status. Never includes token values."""

    connected: bool
    has_access_token: bool
    has_refresh_token: bool
    token_type: Optional[str] = None
    expires_at: Optional[str] = None


class DisconnectResponse(BaseModel):
    """Disconnect response."""

    success: bool
    message: str


def _dashboard_redirect(**params: str) -> RedirectResponse:
    settings = get_settings()
    response = RedirectResponse(
        f"{settings.dashboard_url.rstrip('/')}/?{urlencode(params)}", status_code=302
    )
    response.delete_cookie(STATE_COOKIE_NAME)
    return response


def _error_redirect(code: str, description: str) -> RedirectResponse:
    return _dashboard_redirect(error=code, description=description)


@router.get("/authorize")
async def authorize(oauth_client: KledoOAuthClient = Depends(get_oauth_client)):
    """
    Start the OAuth2 flow.
    Sets a signed state cookie and redirects to Kledo's consent page.
    """
    settings = get_settings()

    if not oauth_client.is_configured:
        logger.error("oauth_not_configured")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "oauth_not_configured",
                "detail": "KLEDO_CLIENT_ID, KLEDO_CLIENT_SECRET and KLEDO_REDIRECT_URI must be set",
            },
        )

    state = oauth_client.new_state()
    response = RedirectResponse(oauth_client.build_authorization_url(state), status_code=302)
    response.set_cookie(
        STATE_COOKIE_NAME,
        sign_state(state),
        max_age=settings.oauth_state_ttl_seconds,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )

    logger.info("oauth_initiated")
    return response


@router.get("/callback")
async def oauth_callback(
    request: Request,
    code: Optional[str] = Query(default=None, description="Authorization code from Kledo"),
    state: Optional[str] = Query(default=None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(default=None, description="Provider error code"),
    error_description: Optional[str] = Query(default=None),
    oauth_client: KledoOAuthClient = Depends(get_oauth_client),
    token_manager: TokenManager = Depends(get_token_manager),
):
    """
    OAuth2 callback endpoint.
    Validates state, exchanges the code and stores tokens server-side, then
    sends the browser back to the dashboard.
    """
    settings = get_settings()

    if error:
        logger.warning("oauth_provider_error", error=error)
        return _error_redirect(error, error_description or "Authorization was not granted")

    if not code:
        logger.warning("oauth_callback_rejected", reason="no_code")
        return _error_redirect("no_code", "No authorization code received")

    try:
        verify_state(request.cookies.get(STATE_COOKIE_NAME), state)
    except InvalidState as e:
        logger.warning("oauth_callback_rejected", reason="invalid_state", error=str(e))
        return _error_redirect("invalid_state", "Authorization state did not match; please retry")

    try:
        tokens = await oauth_client.exchange_code(code)
        token_manager.store_exchanged(tokens)
    except TokenExchangeFailed as e:
        logger.error("oauth_callback_failed", reason="token_exchange_failed", status_code=e.status_code)
        return _error_redirect("token_exchange_failed", "Kledo rejected the authorization code")
    except (ConnectorError, StorageError) as e:
        logger.error("oauth_callback_failed", reason="callback_error", error=str(e))
        return _error_redirect("callback_error", "Could not complete the Kledo connection")

    response = _dashboard_redirect(auth="success")
    response.set_cookie(
        CONNECTED_COOKIE_NAME,
        "true",
        max_age=CONNECTED_COOKIE_MAX_AGE,
        httponly=False,
        secure=settings.cookie_secure,
        samesite="lax",
    )

    logger.info("oauth_callback_completed")
    return response


@router.get("/status", response_model=OAuthStatusResponse)
async def get_oauth_status(token_manager: TokenManager = Depends(get_token_manager)):
    """Report whether Kledo is connected."""
    return OAuthStatusResponse(**token_manager.status())


@router.delete("/status", response_model=DisconnectResponse)
async def disconnect(token_manager: TokenManager = Depends(get_token_manager)):
    """
    Disconnect Kledo.
    Clears stored tokens and the connected flag cookie.
    """
    had_tokens = token_manager.disconnect()

    response = JSONResponse(
        content=DisconnectResponse(
            success=True,
            message="Disconnected from Kledo" if had_tokens else "Kledo was not connected",
        ).model_dump()
    )
    response.delete_cookie(CONNECTED_COOKIE_NAME)
    return response
