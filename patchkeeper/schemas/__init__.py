from patchkeeper.schemas.catalog import UpdateRecord

__all__ = ["UpdateRecord"]
