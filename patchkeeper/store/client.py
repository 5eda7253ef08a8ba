# patchkeeper/store/client.py
"""
Store client: statement execution against the update metadata store.

Handles:
- Per-statement timeouts, including "no timeout" for long maintenance work
- Classifying driver errors into connectivity loss vs. statement failure
- Store statistics and size for before/after reporting
- Backup and restore primitives
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.sql.elements import TextClause

from patchkeeper.errors import StoreConnectivityError, StoreError
from patchkeeper.store import statements

logger = logging.getLogger(__name__)

# Sentinel: use the client's default statement timeout
DEFAULT_TIMEOUT = object()

_CONNECTIVITY_MARKERS = (
    "communication link failure",
    "unable to open database",
    "server has gone away",
    "connection refused",
    "connection is closed",
    "connection is busy",
    "login timeout expired",
    "tcp provider",
    "named pipes provider",
)


def is_connectivity_error(exc: Exception) -> bool:
    """True if a driver error means the connection itself is unusable."""
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True

    orig = getattr(exc, "orig", None) or exc
    args = getattr(orig, "args", ())
    # ODBC SQLSTATE class 08 = connection exception
    if args and isinstance(args[0], str) and args[0].startswith("08"):
        return True

    message = str(orig).lower()
    return any(marker in message for marker in _CONNECTIVITY_MARKERS)


@dataclass
class StoreStats:
    """Row counts and size used for before/after reporting."""

    supersession_records: int = 0
    declined_revisions: int = 0
    superseded_revisions: int = 0
    status_records: int = 0
    updates: int = 0
    size_bytes: int = 0
    allocated_mb: float = 0.0
    used_mb: float = 0.0
    free_mb: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


class StoreClient:
    """
    Thin client over a SQLAlchemy engine.

    Every execute() runs and commits in its own transaction so a batched
    caller never holds locks across statements.
    """

    def __init__(self, engine: Engine, database_name: str = "SUSDB", default_timeout: int | None = 30):
        self.engine = engine
        self.database_name = database_name
        self.default_timeout = default_timeout

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def _apply_timeout(self, conn: Connection, timeout_seconds: Any) -> None:
        if timeout_seconds is DEFAULT_TIMEOUT:
            timeout_seconds = self.default_timeout
        dbapi_conn = conn.connection.dbapi_connection
        # pyodbc exposes a per-connection query timeout; 0 means none
        if hasattr(dbapi_conn, "timeout"):
            dbapi_conn.timeout = int(timeout_seconds or 0)

    @contextmanager
    def _transaction(self, timeout_seconds: Any = DEFAULT_TIMEOUT):
        try:
            with self.engine.begin() as conn:
                self._apply_timeout(conn, timeout_seconds)
                yield conn
        except DBAPIError as e:
            if is_connectivity_error(e):
                raise StoreConnectivityError(f"Store connection lost: {e.orig}") from e
            raise StoreError(f"Store statement failed: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StoreError(f"Store statement failed: {e}") from e

    def test_connection(self) -> bool:
        """Tests connectivity to the store."""
        try:
            with self._transaction() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except StoreError as e:
            logger.warning(f"Store connection test failed: {e}")
            return False

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def execute(
        self,
        statement: TextClause | str,
        params: dict | None = None,
        timeout_seconds: Any = DEFAULT_TIMEOUT,
    ) -> int:
        """Execute one statement in its own transaction. Returns rows affected."""
        if isinstance(statement, str):
            statement = text(statement)
        with self._transaction(timeout_seconds) as conn:
            result = conn.execute(statement, params or {})
            return max(result.rowcount or 0, 0)

    def execute_all(
        self,
        statement_list: list[TextClause],
        params: dict | None = None,
        timeout_seconds: Any = DEFAULT_TIMEOUT,
    ) -> list[int]:
        """Execute several statements atomically. Returns rows affected per statement."""
        counts = []
        with self._transaction(timeout_seconds) as conn:
            for statement in statement_list:
                result = conn.execute(statement, params or {})
                counts.append(max(result.rowcount or 0, 0))
        return counts

    def query(
        self,
        statement: TextClause | str,
        params: dict | None = None,
        timeout_seconds: Any = DEFAULT_TIMEOUT,
    ) -> list[dict]:
        if isinstance(statement, str):
            statement = text(statement)
        with self._transaction(timeout_seconds) as conn:
            return [dict(row) for row in conn.execute(statement, params or {}).mappings()]

    def scalar(
        self,
        statement: TextClause | str,
        params: dict | None = None,
        timeout_seconds: Any = DEFAULT_TIMEOUT,
    ) -> Any:
        if isinstance(statement, str):
            statement = text(statement)
        with self._transaction(timeout_seconds) as conn:
            return conn.execute(statement, params or {}).scalar()

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def get_size_bytes(self) -> int:
        """Gets the current store size in bytes."""
        value = self.scalar(
            statements.database_size_bytes(self.dialect),
            {"database_name": self.database_name} if self.dialect == "mssql" else None,
        )
        return int(value or 0)

    def get_stats(self) -> StoreStats:
        """Gets row counts for the maintained tables plus the store size."""
        rows = self.query(statements.STORE_STATS)
        row = rows[0] if rows else {}
        space = self.get_space_usage()
        return StoreStats(
            supersession_records=int(row.get("supersession_records") or 0),
            declined_revisions=int(row.get("declined_revisions") or 0),
            superseded_revisions=int(row.get("superseded_revisions") or 0),
            status_records=int(row.get("status_records") or 0),
            updates=int(row.get("updates") or 0),
            size_bytes=self.get_size_bytes(),
            **space,
        )

    def get_space_usage(self) -> dict[str, float]:
        """Allocated, used and free data-file space in MB."""
        rows = self.query(statements.database_space_usage(self.dialect))
        row = rows[0] if rows else {}
        return {key: round(float(row.get(key) or 0), 2) for key in ("allocated_mb", "used_mb", "free_mb")}

    def shrink(self, target_free_percent: int = 10) -> None:
        """
        Release unused space from the data files.

        Runs with no timeout; shrinking a large store can take hours.
        """
        before = self.get_space_usage()
        self.execute(
            statements.shrink_database(self.dialect, self.database_name, target_free_percent),
            timeout_seconds=None,
        )
        after = self.get_space_usage()
        logger.info(
            f"Store shrunk: {before['allocated_mb']} MB -> {after['allocated_mb']} MB allocated",
            extra={"event": "store_shrink", "before": before, "after": after},
        )

    def list_index_stats(self) -> list[dict]:
        """Per-index fragmentation rows, or [] where the dialect reports none."""
        statement = statements.index_physical_stats(self.dialect)
        if statement is None:
            logger.debug(f"No index fragmentation statistics for dialect {self.dialect}")
            return []
        return self.query(statement, timeout_seconds=None)

    # -------------------------------------------------------------------------
    # Backup / restore
    # -------------------------------------------------------------------------

    def backup_to(self, path: str) -> None:
        """Write a full backup of the store to path."""
        if self.dialect == "sqlite":
            self._sqlite_copy(path, to_file=True)
        else:
            self._run_driver_statement(statements.backup_database(self.database_name), path)
        logger.info(f"Store backed up to {path}", extra={"event": "store_backup", "path": path})

    def restore_from(self, path: str) -> None:
        """Replace the store contents with the backup at path."""
        if self.dialect == "sqlite":
            self._sqlite_copy(path, to_file=False)
        else:
            self._run_driver_statement(statements.restore_database(self.database_name), path)
        logger.info(f"Store restored from {path}", extra={"event": "store_restore", "path": path})

    def _sqlite_copy(self, path: str, to_file: bool) -> None:
        raw = self.engine.raw_connection()
        try:
            other = sqlite3.connect(path)
            try:
                if to_file:
                    raw.driver_connection.backup(other)
                else:
                    other.backup(raw.driver_connection)
            finally:
                other.close()
        except sqlite3.Error as e:
            raise StoreError(f"SQLite {'backup' if to_file else 'restore'} failed: {e}") from e
        finally:
            raw.close()

    def _run_driver_statement(self, sql: str, path: str) -> None:
        """
        BACKUP/RESTORE cannot run inside a transaction and stream progress
        messages as extra result sets, so they go through the raw driver.
        """
        raw = self.engine.raw_connection()
        try:
            driver_conn = raw.driver_connection
            driver_conn.autocommit = True
            if hasattr(driver_conn, "timeout"):
                driver_conn.timeout = 0
            cursor = driver_conn.cursor()
            try:
                cursor.execute(sql, path)
                while cursor.nextset():
                    pass
            finally:
                cursor.close()
        except Exception as e:
            if is_connectivity_error(e):
                raise StoreConnectivityError(f"Store connection lost: {e}") from e
            raise StoreError(f"Store statement failed: {e}") from e
        finally:
            raw.close()
