"""
OAuth2 token models for the accounting platform connection.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


class OAuthTokenSet(BaseModel):
    """
    Access/refresh token pair issued by the accounting platform.

    Replaced wholesale on every code exchange or refresh; never partially
    updated.

    Attributes:
        access_token: Bearer token for API calls
        refresh_token: Token used to obtain a new access token
        token_type: Authorization scheme, normally "Bearer"
        expires_at: UTC instant the access token stops working (None = unknown)
        scope: Granted scope, if the provider reports one
    """

    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None

    @classmethod
    def from_token_response(
        cls,
        payload: dict[str, Any],
        previous_refresh_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "OAuthTokenSet":
        """
        Build a token set from an OAuth2 token endpoint response.

        Args:
            payload: Parsed JSON body from the token endpoint
            previous_refresh_token: Kept when the response omits a new one
            now: Reference time for ``expires_in`` (defaults to utcnow)

        Raises:
            KeyError: If ``access_token`` is missing
        """
        now = now or datetime.now(timezone.utc)
        expires_at = None
        if payload.get("expires_in") is not None:
            expires_at = now + timedelta(seconds=int(payload["expires_in"]))

        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or previous_refresh_token,
            token_type=payload.get("token_type") or "Bearer",
            expires_at=expires_at,
            scope=payload.get("scope") or None,
        )

    def is_expiring(self, leeway: timedelta = timedelta(minutes=5)) -> bool:
        """Check if the access token expires within ``leeway``."""
        if not self.expires_at:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) >= expires_at - leeway

    @property
    def authorization_header(self) -> str:
        """Get authorization header value."""
        return f"{self.token_type or 'Bearer'} {self.access_token}"
