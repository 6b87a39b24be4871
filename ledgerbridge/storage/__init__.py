"""
Data storage layer.

All durable state (OAuth tokens, the transfer ledger, integration settings)
lives server-side in DuckDB.
"""

from functools import lru_cache

from ledgerbridge.config import get_settings

from .base import StorageBackend
from .duckdb_storage import DuckDBStorage, StorageError
from .token_store import TokenStore


@lru_cache
def get_storage() -> StorageBackend:
    """
    Get cached storage backend instance (singleton).

    Returns:
        StorageBackend implementation instance
    """
    settings = get_settings()
    return DuckDBStorage(db_path=settings.db_path)


__all__ = [
    "StorageBackend",
    "DuckDBStorage",
    "StorageError",
    "TokenStore",
    "get_storage",
]
