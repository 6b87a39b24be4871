"""API routers for all endpoints."""

from ledgerbridge.routers import accounting, oauth, sync, transactions, webhook

__all__ = [
    "webhook",
    "oauth",
    "sync",
    "transactions",
    "accounting",
]
