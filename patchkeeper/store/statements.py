# patchkeeper/store/statements.py
"""
Dialect-specific maintenance statements.

The production store is SQL Server; SQLite backs local stores and tests.
Every batched delete is shaped so one statement touches at most
:batch_size rows and commits on its own, which bounds lock hold time.
"""

import re

from sqlalchemy import DateTime, Integer, bindparam, text
from sqlalchemy.sql.elements import TextClause

from patchkeeper.errors import StoreError
from patchkeeper.models import RevisionState

SUPPORTED_DIALECTS = ("mssql", "sqlite")

_SAFE_DATABASE_NAME = re.compile(r"^[A-Za-z0-9_]+$")


def _require_supported(dialect: str) -> None:
    if dialect not in SUPPORTED_DIALECTS:
        raise StoreError(f"Unsupported store dialect: {dialect}. Supported: {', '.join(SUPPORTED_DIALECTS)}")


def quote_identifier(dialect: str, name: str) -> str:
    """Quote a table or index name for the given dialect."""
    if dialect == "mssql":
        return "[" + name.replace("]", "]]") + "]"
    return '"' + name.replace('"', '""') + '"'


# -----------------------------------------------------------------------------
# Batched deletes
# -----------------------------------------------------------------------------


def prune_supersession_batch(dialect: str) -> TextClause:
    """Delete up to :batch_size supersession edges whose revision is in :state."""
    _require_supported(dialect)
    if dialect == "mssql":
        sql = """
            DELETE TOP (:batch_size) rsu
            FROM tbRevisionSupersedesUpdate rsu
            INNER JOIN tbRevision r ON rsu.RevisionID = r.RevisionID
            WHERE r.State = :state
        """
    else:
        sql = """
            DELETE FROM tbRevisionSupersedesUpdate
            WHERE rowid IN (
                SELECT rsu.rowid
                FROM tbRevisionSupersedesUpdate AS rsu
                INNER JOIN tbRevision AS r ON rsu.RevisionID = r.RevisionID
                WHERE r.State = :state
                LIMIT :batch_size
            )
        """
    return text(sql).bindparams(bindparam("batch_size", type_=Integer), bindparam("state", type_=Integer))


def prune_status_records_batch(dialect: str) -> TextClause:
    """
    Delete up to :batch_size status records owned by declined or superseded
    revisions of updates released before :cutoff.
    """
    _require_supported(dialect)
    if dialect == "mssql":
        sql = """
            DELETE TOP (:batch_size) s
            FROM tbUpdateStatusPerComputer s
            INNER JOIN tbRevision r ON s.LocalUpdateID = r.LocalUpdateID AND s.RevisionID = r.RevisionID
            INNER JOIN tbUpdate u ON u.LocalUpdateID = r.LocalUpdateID
            WHERE r.State IN (:declined, :superseded)
            AND u.CreationDate < :cutoff
        """
    else:
        sql = """
            DELETE FROM tbUpdateStatusPerComputer
            WHERE rowid IN (
                SELECT s.rowid
                FROM tbUpdateStatusPerComputer AS s
                INNER JOIN tbRevision AS r ON s.LocalUpdateID = r.LocalUpdateID AND s.RevisionID = r.RevisionID
                INNER JOIN tbUpdate AS u ON u.LocalUpdateID = r.LocalUpdateID
                WHERE r.State IN (:declined, :superseded)
                AND u.CreationDate < :cutoff
                LIMIT :batch_size
            )
        """
    return text(sql).bindparams(
        bindparam("batch_size", type_=Integer),
        bindparam("declined", value=RevisionState.DECLINED.value, type_=Integer),
        bindparam("superseded", value=RevisionState.SUPERSEDED.value, type_=Integer),
        bindparam("cutoff", type_=DateTime),
    )


# -----------------------------------------------------------------------------
# Single-update purge
# -----------------------------------------------------------------------------


RESOLVE_LOCAL_UPDATE_ID = text("SELECT LocalUpdateID FROM tbUpdate WHERE UpdateID = :update_id")


def purge_update(dialect: str) -> list[TextClause]:
    """
    Statements removing one update and its dependent rows, leaf to root.

    SQL Server uses the store's own purge procedure.
    """
    _require_supported(dialect)
    if dialect == "mssql":
        return [text("EXEC spDeleteUpdate @localUpdateID = :local_update_id")]

    revisions = "SELECT RevisionID FROM tbRevision WHERE LocalUpdateID = :local_update_id"
    return [
        text(f"DELETE FROM tbRevisionSupersedesUpdate WHERE RevisionID IN ({revisions})"),
        text("DELETE FROM tbUpdateStatusPerComputer WHERE LocalUpdateID = :local_update_id"),
        text(f"DELETE FROM tbDeployment WHERE RevisionID IN ({revisions})"),
        text("DELETE FROM tbRevision WHERE LocalUpdateID = :local_update_id"),
        text("DELETE FROM tbUpdate WHERE LocalUpdateID = :local_update_id"),
    ]


# -----------------------------------------------------------------------------
# Index maintenance
# -----------------------------------------------------------------------------


def index_physical_stats(dialect: str) -> TextClause | None:
    """
    Per-index fragmentation and page count.

    Returns None where the dialect exposes no fragmentation statistics.
    """
    _require_supported(dialect)
    if dialect != "mssql":
        return None
    return text("""
        SELECT
            OBJECT_NAME(ips.object_id) AS table_name,
            i.name AS index_name,
            ips.avg_fragmentation_in_percent AS fragmentation_percent,
            ips.page_count AS page_count
        FROM sys.dm_db_index_physical_stats(DB_ID(), NULL, NULL, NULL, 'LIMITED') ips
        INNER JOIN sys.indexes i ON ips.object_id = i.object_id AND ips.index_id = i.index_id
        WHERE i.name IS NOT NULL
        AND OBJECT_NAME(ips.object_id) NOT LIKE 'ivw%'
        ORDER BY ips.page_count DESC
    """)


def rebuild_index(dialect: str, table_name: str, index_name: str) -> TextClause:
    _require_supported(dialect)
    index = quote_identifier(dialect, index_name)
    if dialect == "mssql":
        table = quote_identifier(dialect, table_name)
        return text(f"ALTER INDEX {index} ON {table} REBUILD WITH (ONLINE = OFF, SORT_IN_TEMPDB = ON)")
    return text(f"REINDEX {index}")


def reorganize_index(dialect: str, table_name: str, index_name: str) -> TextClause:
    _require_supported(dialect)
    index = quote_identifier(dialect, index_name)
    if dialect == "mssql":
        table = quote_identifier(dialect, table_name)
        return text(f"ALTER INDEX {index} ON {table} REORGANIZE")
    # SQLite has no in-place reorganize
    return text(f"REINDEX {index}")


def update_statistics(dialect: str) -> TextClause:
    _require_supported(dialect)
    if dialect == "mssql":
        return text("EXEC sp_updatestats")
    return text("ANALYZE")


# -----------------------------------------------------------------------------
# Size, statistics, backup
# -----------------------------------------------------------------------------


def database_size_bytes(dialect: str) -> TextClause:
    _require_supported(dialect)
    if dialect == "mssql":
        return text("""
            SELECT CAST(SUM(CAST(size AS BIGINT)) * 8192 AS BIGINT)
            FROM sys.master_files
            WHERE database_id = DB_ID(:database_name)
        """)
    return text("SELECT page_count * page_size FROM pragma_page_count(), pragma_page_size()")


def database_space_usage(dialect: str) -> TextClause:
    """Allocated, used and free data-file space in MB."""
    _require_supported(dialect)
    if dialect == "mssql":
        return text("""
            SELECT
                SUM(size / 128.0) AS allocated_mb,
                SUM(CAST(FILEPROPERTY(name, 'SpaceUsed') AS INT) / 128.0) AS used_mb,
                SUM((size - CAST(FILEPROPERTY(name, 'SpaceUsed') AS INT)) / 128.0) AS free_mb
            FROM sys.database_files
            WHERE type = 0
        """)
    return text("""
        SELECT
            page_count * page_size / 1048576.0 AS allocated_mb,
            (page_count - freelist_count) * page_size / 1048576.0 AS used_mb,
            freelist_count * page_size / 1048576.0 AS free_mb
        FROM pragma_page_count(), pragma_freelist_count(), pragma_page_size()
    """)


def shrink_database(dialect: str, database_name: str, target_free_percent: int) -> TextClause:
    """Release unused data-file space, leaving target_free_percent free."""
    _require_supported(dialect)
    if dialect == "mssql":
        name = _checked_database_name(database_name)
        percent = int(target_free_percent)
        if not 0 <= percent <= 100:
            raise StoreError(f"Shrink target must be 0-100 percent, got {percent}")
        return text(f"DBCC SHRINKDATABASE([{name}], {percent}) WITH NO_INFOMSGS")
    # SQLite rebuilds the file with no free pages
    return text("VACUUM")


STORE_STATS = text("""
    SELECT
        (SELECT COUNT(*) FROM tbRevisionSupersedesUpdate) AS supersession_records,
        (SELECT COUNT(*) FROM tbRevision WHERE State = 2) AS declined_revisions,
        (SELECT COUNT(*) FROM tbRevision WHERE State = 3) AS superseded_revisions,
        (SELECT COUNT(*) FROM tbUpdateStatusPerComputer) AS status_records,
        (SELECT COUNT(*) FROM tbUpdate) AS updates
""")


def _checked_database_name(database_name: str) -> str:
    if not _SAFE_DATABASE_NAME.match(database_name):
        raise StoreError(f"Refusing unsafe database name: {database_name!r}")
    return database_name


def backup_database(database_name: str) -> str:
    """SQL Server backup statement (driver-level, one positional parameter: the path)."""
    name = _checked_database_name(database_name)
    return f"BACKUP DATABASE [{name}] TO DISK = ? WITH INIT, STATS = 10"


def restore_database(database_name: str) -> str:
    """SQL Server restore statement (driver-level, one positional parameter: the path)."""
    name = _checked_database_name(database_name)
    return f"RESTORE DATABASE [{name}] FROM DISK = ? WITH REPLACE, STATS = 10"
