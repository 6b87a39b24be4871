"""
Server-side persistence for the accounting platform token set.

Tokens never reach the browser. The dashboard only receives a
non-sensitive "connected" flag cookie.
"""

from typing import Optional

import structlog

from ledgerbridge.models.tokens import OAuthTokenSet

from .base import StorageBackend
from .duckdb_storage import StorageError

logger = structlog.get_logger(__name__)

DEFAULT_CONNECTION_ID = "default"


class TokenStore:
    """
    Save, load and clear the single Kledo connection's token set.

    Writes replace the whole set. Reads treat unreadable storage as
    "no tokens" so callers fall through to AuthRequired instead of crashing.
    """

    def __init__(self, storage: StorageBackend, connection_id: str = DEFAULT_CONNECTION_ID):
        self.storage = storage
        self.connection_id = connection_id

    def save(self, tokens: OAuthTokenSet) -> None:
        self.storage.save_tokens(self.connection_id, tokens)

    def load(self) -> Optional[OAuthTokenSet]:
        try:
            return self.storage.load_tokens(self.connection_id)
        except StorageError as e:
            logger.warning("token_store_unreadable", connection_id=self.connection_id, error=str(e))
            return None

    def clear(self) -> bool:
        return self.storage.clear_tokens(self.connection_id)

    def is_connected(self) -> bool:
        return self.load() is not None
