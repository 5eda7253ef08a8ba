"""
Catalog client interface.

The catalog owns update metadata (titles, classifications, lifecycle flags)
and exposes per-item lifecycle commands. Implementations must:
- Raise CatalogUnavailableError when the listing cannot be retrieved
- Raise CatalogError for a single failed decline/approve/purge
- Raise StoreConnectivityError when the backing connection is lost
"""

from abc import ABC, abstractmethod

from patchkeeper.catalog.types import Update


class CatalogClient(ABC):
    """Abstract interface to the update catalog."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Client name (e.g., 'sql')."""
        pass

    @abstractmethod
    def list_updates(self) -> list[Update]:
        """
        List every update with its lifecycle flags.

        Raises:
            CatalogUnavailableError: listing could not be retrieved
        """
        pass

    @abstractmethod
    def decline(self, update_id: str) -> None:
        """Decline one update."""
        pass

    @abstractmethod
    def approve(self, update_id: str, target_group: str) -> None:
        """Approve one update for install on target_group."""
        pass

    @abstractmethod
    def resolve_local_id(self, update_id: str) -> int | None:
        """Map a catalog update id to the store-local identifier, or None if gone."""
        pass

    @abstractmethod
    def purge_metadata(self, local_update_id: int) -> None:
        """Permanently remove one update and its dependent rows."""
        pass
