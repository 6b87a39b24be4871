"""
OAuth state cookie signing and validation.
Uses python-jose to bind the CSRF state to the browser in a signed,
short-lived JWT cookie.
"""

import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from ledgerbridge.config import get_settings

STATE_COOKIE_NAME = "oauth_state"
STATE_TOKEN_TYPE = "oauth_state"


class InvalidState(Exception):
    """Raised when the callback state is missing, expired or mismatched."""

    code = "invalid_state"


def generate_state() -> str:
    """Generate a fresh unguessable state value."""
    return secrets.token_urlsafe(32)


def sign_state(
    state: str,
    secret: Optional[str] = None,
    algorithm: Optional[str] = None,
    ttl_seconds: Optional[int] = None,
) -> str:
    """
    Sign a state value for the state cookie.

    Args:
        state: State value sent to the authorization server
        secret: Signing key (defaults to SESSION_SECRET)
        algorithm: JWT algorithm (defaults to SESSION_ALGORITHM)
        ttl_seconds: Cookie lifetime (defaults to OAUTH_STATE_TTL_SECONDS)

    Returns:
        Encoded JWT
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    ttl = ttl_seconds if ttl_seconds is not None else settings.oauth_state_ttl_seconds

    payload = {
        "state": state,
        "type": STATE_TOKEN_TYPE,
        "iat": now,
        "exp": now + timedelta(seconds=ttl),
    }
    return jwt.encode(
        payload,
        secret or settings.session_secret,
        algorithm=algorithm or settings.session_algorithm,
    )


def verify_state(
    cookie_value: Optional[str],
    returned_state: Optional[str],
    secret: Optional[str] = None,
    algorithm: Optional[str] = None,
) -> str:
    """
    Check the state returned on the callback against the signed cookie.

    Returns:
        The verified state value

    Raises:
        InvalidState: If the cookie is missing, tampered, expired, or its
            state does not equal ``returned_state``
    """
    if not cookie_value or not returned_state:
        raise InvalidState("Missing OAuth state")

    settings = get_settings()
    try:
        payload = jwt.decode(
            cookie_value,
            secret or settings.session_secret,
            algorithms=[algorithm or settings.session_algorithm],
        )
    except JWTError as e:
        raise InvalidState(f"State cookie rejected: {e}") from e

    if payload.get("type") != STATE_TOKEN_TYPE:
        raise InvalidState("Invalid state token type")

    expected = payload.get("state") or ""
    if not hmac.compare_digest(expected.encode("utf-8"), returned_state.encode("utf-8")):
        raise InvalidState("OAuth state mismatch")

    return expected
