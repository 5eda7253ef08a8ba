# patchkeeper/constants.py
"""
Centralized magic constants organized by domain.

Defaults here mirror the Settings defaults so services can be constructed
without a Settings object in tests and scripts.
"""


class MutationDefaults:
    """Batched delete and purge tuning."""

    BATCH_SIZE = 10_000                 # Rows per DELETE statement
    BATCH_DELAY_SECONDS = 1.0           # Pause between batches (lock release window)
    PROGRESS_EVERY_ROWS = 50_000        # Coarse progress logging
    PURGE_GROUP_SIZE = 100              # Updates per purge progress group
    NO_TIMEOUT = None                   # Statement timeout for long maintenance work


class IndexDefaults:
    """Fragmentation thresholds for index maintenance."""

    FRAGMENTATION_FLOOR = 10.0          # At or below: leave alone
    REBUILD_THRESHOLD = 30.0            # Above: rebuild, else reorganize
    MIN_PAGE_COUNT = 1000               # Small indexes are not worth touching
    SKIP_TABLE_PREFIX = "ivw"           # Indexed views are skipped


class RetentionDefaults:
    """Update lifecycle policy defaults."""

    AGE_MONTHS = 6
    AUTO_APPROVE_CAP = 100
    TARGET_GROUP = "All Computers"
    EXCLUDED_TITLE_MARKERS = ("preview", "beta")


class BackupDefaults:
    """Store backup naming and retention."""

    DATABASE_NAME = "SUSDB"
    FILE_EXTENSION = ".bak"
    FILE_PATTERN = "*.bak"
    MAX_AGE_DAYS = 90


class SyncDefaults:
    """Differential sync and export archive layout."""

    CONTENT_DIR_NAME = "WsusContent"
    INSTRUCTIONS_FILE = "IMPORT_INSTRUCTIONS.txt"
    COPY_WORKERS = 16
    COPY_RETRIES = 2
    COPY_RETRY_WAIT_SECONDS = 5
    ROBOCOPY_PARTIAL_EXIT = 4           # 4-7: mismatches/extra files, logged as warning
    ROBOCOPY_FAILURE_EXIT = 8           # 8+: at least one copy failure
    MTIME_TOLERANCE_SECONDS = 2         # FAT32 stores 2 s timestamps (robocopy /FFT)


MONTH_NUMBERS = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

MONTH_ABBREVIATIONS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
