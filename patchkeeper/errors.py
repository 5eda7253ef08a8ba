# patchkeeper/errors.py
"""
Exception hierarchy for maintenance and sync operations.

Precondition failures abort a run before anything is mutated. Connectivity
errors abort the current phase only. Everything else is a per-item failure
that callers log and count.
"""


class PatchkeeperError(Exception):
    """Base class for all patchkeeper errors."""

    pass


class PreconditionError(PatchkeeperError):
    """A required store, catalog or path is not reachable."""

    pass


class StoreUnavailableError(PreconditionError):
    """The store did not accept a connection before the run started."""

    pass


class SyncPreconditionError(PreconditionError):
    """A sync source or destination root is not accessible."""

    pass


class MaintenanceAlreadyRunningError(PreconditionError):
    """Another maintenance run holds the run-in-progress marker."""

    pass


class StoreError(PatchkeeperError):
    """A store statement failed."""

    pass


class StoreConnectivityError(StoreError):
    """The store connection was lost or refused mid-operation."""

    pass


class CatalogError(PatchkeeperError):
    """A single catalog operation (decline, approve, purge) failed."""

    pass


class CatalogUnavailableError(PatchkeeperError):
    """The catalog listing could not be retrieved."""

    pass


class BackupError(PatchkeeperError):
    """The backup primitive failed or produced no file."""

    pass


class SourceNotFoundError(PatchkeeperError):
    """Discovery found neither a flat nor an archived backup under the source root."""

    pass
