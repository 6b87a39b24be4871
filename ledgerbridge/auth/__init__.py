"""OAuth state cookie handling."""

from ledgerbridge.auth.state import (
    STATE_COOKIE_NAME,
    InvalidState,
    generate_state,
    sign_state,
    verify_state,
)

__all__ = ["STATE_COOKIE_NAME", "InvalidState", "generate_state", "sign_state", "verify_state"]
