# patchkeeper/catalog/sql_catalog.py
"""
Catalog client backed directly by the metadata store.

Lifecycle flags are derived from the latest revision of each update:
- declined: State = Declined
- superseded: State = Superseded, or another revision records a supersession edge to it
- expired: State = Expired
"""

import logging
from collections import defaultdict
from datetime import UTC, datetime

from pydantic import ValidationError
from sqlalchemy import DateTime, bindparam, text

from patchkeeper.catalog.base import CatalogClient
from patchkeeper.catalog.types import Update
from patchkeeper.errors import CatalogError, CatalogUnavailableError, StoreConnectivityError, StoreError
from patchkeeper.models import DeploymentAction, RevisionState
from patchkeeper.schemas.catalog import UpdateRecord
from patchkeeper.services.resilience import with_sync_retry
from patchkeeper.store import StoreClient
from patchkeeper.store import statements

logger = logging.getLogger(__name__)


LIST_UPDATES = text(f"""
    SELECT
        u.UpdateID AS UpdateID,
        u.Title AS Title,
        u.Classification AS Classification,
        u.CreationDate AS CreationDate,
        CASE WHEN r.State = {RevisionState.DECLINED.value} THEN 1 ELSE 0 END AS IsDeclined,
        CASE WHEN r.State = {RevisionState.SUPERSEDED.value}
              OR EXISTS (
                  SELECT 1 FROM tbRevisionSupersedesUpdate e
                  WHERE e.SupersededUpdateID = u.UpdateID
              )
             THEN 1 ELSE 0 END AS IsSuperseded,
        CASE WHEN r.State = {RevisionState.EXPIRED.value} THEN 1 ELSE 0 END AS IsExpired
    FROM tbUpdate u
    INNER JOIN tbRevision r ON r.LocalUpdateID = u.LocalUpdateID AND r.IsLatestRevision = 1
""")

LIST_APPROVALS = text(f"""
    SELECT u.UpdateID AS UpdateID, d.TargetGroupName AS TargetGroupName
    FROM tbDeployment d
    INNER JOIN tbRevision r ON d.RevisionID = r.RevisionID
    INNER JOIN tbUpdate u ON u.LocalUpdateID = r.LocalUpdateID
    WHERE d.ActionID = {DeploymentAction.INSTALL.value}
""")

DECLINE_UPDATE = text(f"""
    UPDATE tbRevision
    SET State = {RevisionState.DECLINED.value}
    WHERE IsLatestRevision = 1
    AND LocalUpdateID = (SELECT LocalUpdateID FROM tbUpdate WHERE UpdateID = :update_id)
""")

APPROVE_UPDATE = text(f"""
    INSERT INTO tbDeployment (RevisionID, TargetGroupName, ActionID, CreationDate)
    SELECT r.RevisionID, :target_group, {DeploymentAction.INSTALL.value}, :created
    FROM tbRevision r
    INNER JOIN tbUpdate u ON u.LocalUpdateID = r.LocalUpdateID
    WHERE u.UpdateID = :update_id AND r.IsLatestRevision = 1
""").bindparams(bindparam("created", type_=DateTime))


class SqlCatalogClient(CatalogClient):
    """
    Catalog over the store mirror tables.

    Usage:
        catalog = SqlCatalogClient(store)
        updates = catalog.list_updates()
    """

    def __init__(self, store: StoreClient, list_attempts: int = 3, retry_wait_seconds: float = 2.0):
        self._store = store
        self._list_attempts = list_attempts
        self._retry_wait_seconds = retry_wait_seconds

    @property
    def name(self) -> str:
        return "sql"

    def list_updates(self) -> list[Update]:
        fetch = with_sync_retry(
            max_attempts=self._list_attempts,
            min_wait=self._retry_wait_seconds,
            retry_exceptions=(StoreError,),
        )(self._fetch_rows)

        try:
            update_rows, approval_rows = fetch()
        except StoreError as e:
            raise CatalogUnavailableError(f"Catalog listing failed: {e}") from e

        approvals: dict[str, list[str]] = defaultdict(list)
        for row in approval_rows:
            approvals[str(row["UpdateID"]).lower()].append(row["TargetGroupName"])

        updates = []
        for row in update_rows:
            record = dict(row)
            record["ApprovedGroups"] = approvals.get(str(row["UpdateID"]).lower(), [])
            try:
                updates.append(UpdateRecord.model_validate(record).to_update())
            except ValidationError as e:
                logger.warning(f"Skipping malformed catalog row {row.get('UpdateID')}: {e}")

        logger.info(f"Catalog listed {len(updates)} updates", extra={"event": "catalog_listed"})
        return updates

    def _fetch_rows(self) -> tuple[list[dict], list[dict]]:
        return self._store.query(LIST_UPDATES), self._store.query(LIST_APPROVALS)

    def decline(self, update_id: str) -> None:
        affected = self._command(DECLINE_UPDATE, {"update_id": update_id}, "decline")
        if affected == 0:
            raise CatalogError(f"Update {update_id} not found for decline")

    def approve(self, update_id: str, target_group: str) -> None:
        affected = self._command(
            APPROVE_UPDATE,
            {"update_id": update_id, "target_group": target_group, "created": datetime.now(UTC).replace(tzinfo=None)},
            "approve",
        )
        if affected == 0:
            raise CatalogError(f"Update {update_id} not found for approval")

    def resolve_local_id(self, update_id: str) -> int | None:
        try:
            value = self._store.scalar(statements.RESOLVE_LOCAL_UPDATE_ID, {"update_id": update_id})
        except StoreConnectivityError:
            raise
        except StoreError as e:
            raise CatalogError(f"Could not resolve {update_id}: {e}") from e
        return int(value) if value is not None else None

    def purge_metadata(self, local_update_id: int) -> None:
        try:
            self._store.execute_all(
                statements.purge_update(self._store.dialect),
                {"local_update_id": local_update_id},
                timeout_seconds=None,
            )
        except StoreConnectivityError:
            raise
        except StoreError as e:
            raise CatalogError(f"Purge of local update {local_update_id} failed: {e}") from e

    def _command(self, statement, params: dict, action: str) -> int:
        try:
            return self._store.execute(statement, params)
        except StoreConnectivityError:
            raise
        except StoreError as e:
            raise CatalogError(f"{action} of {params.get('update_id')} failed: {e}") from e
