"""
Store client for the update metadata store.

- client: statement execution, statistics, backup/restore
- statements: dialect-specific maintenance SQL
"""

from patchkeeper.store.client import DEFAULT_TIMEOUT, StoreClient, StoreStats, is_connectivity_error

__all__ = [
    "DEFAULT_TIMEOUT",
    "StoreClient",
    "StoreStats",
    "is_connectivity_error",
]
