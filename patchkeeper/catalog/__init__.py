"""
Update catalog access.

- types: Update and classification types
- base: abstract CatalogClient
- sql_catalog: catalog backed by the metadata store
"""

from patchkeeper.catalog.base import CatalogClient
from patchkeeper.catalog.types import Update, UpdateClassification

__all__ = [
    "CatalogClient",
    "Update",
    "UpdateClassification",
]
