# patchkeeper/cli/maintenance.py
"""
CLI commands for patch server maintenance and media sync.

Usage:
    python -m patchkeeper.cli.maintenance run
    python -m patchkeeper.cli.maintenance run --skip-deep-cleanup --export-path E:\\Exports
    python -m patchkeeper.cli.maintenance run --export-path E:\\Exports --export-mode new-only --export-days 30
    python -m patchkeeper.cli.maintenance cleanup --confirm --shrink
    python -m patchkeeper.cli.maintenance sync --source E:\\ --destination C:\\WSUS
    python -m patchkeeper.cli.maintenance sync --source E:\\Archive --destination C:\\WSUS --mode browse-archive
    python -m patchkeeper.cli.maintenance status
    python -m patchkeeper.cli.maintenance backup
    python -m patchkeeper.cli.maintenance prune-backups --max-age-days 90
    python -m patchkeeper.cli.maintenance archive --root E:\\Archive
    python -m patchkeeper.cli.maintenance restore --file C:\\WSUS\\SUSDB_20260110.bak --confirm
"""

import argparse
import signal
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def get_store(settings):
    """Build a store client from settings."""
    from patchkeeper.database import create_store_engine
    from patchkeeper.store import StoreClient

    engine = create_store_engine(settings.STORE_URL)
    return StoreClient(engine, database_name=settings.DATABASE_NAME)


def get_catalog(settings, store):
    from patchkeeper.catalog.sql_catalog import SqlCatalogClient

    return SqlCatalogClient(store, list_attempts=settings.CATALOG_LIST_ATTEMPTS)


def setup(args):
    """Load settings and configure logging."""
    from patchkeeper.config import get_settings
    from patchkeeper.logging_config import configure_logging

    settings = get_settings()
    configure_logging(json_format=settings.LOG_JSON or args.json, level=settings.LOG_LEVEL)
    return settings


def install_cancel_handler() -> threading.Event:
    """First Ctrl+C requests a cooperative cancel; the second one interrupts."""
    cancel = threading.Event()

    def handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        print("\nCancel requested; stopping after the current batch...", file=sys.stderr)
        cancel.set()

    signal.signal(signal.SIGINT, handler)
    return cancel


def print_phase(phase) -> None:
    if phase.skipped:
        print(f"[SKIPPED] {phase.phase}: {phase.skip_reason}")
        return
    status = "CANCELLED" if phase.cancelled else ("OK" if phase.success else "FAILED")
    print(f"[{status}] {phase.phase}")
    for key, value in phase.counts.items():
        print(f"    {key}: {value}")
    for warning in phase.warnings[:20]:
        print(f"    warning: {warning}")
    for error in phase.errors[:20]:
        print(f"    error: {error}")


def print_report(report) -> None:
    from patchkeeper.services.backup import format_size

    print(f"\n=== Maintenance run {report.run_id} ===\n")
    if report.aborted:
        print(f"Aborted: {report.abort_reason}")
    for phase in report.phases:
        print_phase(phase)

    before, after = report.stats_before, report.stats_after
    if before:
        print("\nStore before -> after:")
        for key, value in before.to_dict().items():
            after_value = getattr(after, key) if after else "?"
            if key == "size_bytes":
                value = format_size(value)
                after_value = format_size(after_value) if after else "?"
            print(f"    {key}: {value} -> {after_value}")

    print(f"\nResult: {'SUCCESS' if report.success else 'FAILED'}\n")


def print_sync_result(result) -> None:
    from patchkeeper.services.backup import format_size

    print(f"\n=== Sync ({result.mode}) ===\n")
    if result.effective_source:
        print(f"Source folder: {result.effective_source}")
    print(f"Destination: {result.destination}")
    print(f"Snapshots: {result.leaves_ok}/{result.leaves_total} ok, {result.leaves_failed} failed")
    print(f"Files copied: {result.files_copied} ({format_size(result.bytes_copied)})")
    print(f"Files unchanged: {result.files_skipped}")
    print(f"Files failed: {result.files_failed}")
    if result.cancelled:
        print("Cancelled before completion; re-run to finish.")
    for warning in result.warnings[:20]:
        print(f"  warning: {warning}")
    for error in result.errors[:20]:
        print(f"  error: {error}")
    print()


def build_runner(settings, cancel):
    from patchkeeper.services.maintenance import MaintenanceRunner

    store = get_store(settings)
    return MaintenanceRunner.from_settings(settings, store, get_catalog(settings, store), cancel_event=cancel)


def cmd_run(args):
    """Full maintenance run."""
    from patchkeeper.errors import MaintenanceAlreadyRunningError
    from patchkeeper.services.maintenance import MaintenanceOptions, RunMarker

    settings = setup(args)
    cancel = install_cancel_handler()
    runner = build_runner(settings, cancel)
    options = MaintenanceOptions(
        skip_deep_cleanup=args.skip_deep_cleanup,
        export_path=args.export_path or settings.EXPORT_ROOT,
        export_mode=args.export_mode or settings.EXPORT_MODE,
        export_days=settings.EXPORT_DAYS if args.export_days is None else args.export_days,
        shrink=args.shrink or None,
    )

    try:
        with RunMarker(settings.run_marker_path):
            report = runner.run(options)
    except MaintenanceAlreadyRunningError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print_report(report)
    if not report.success:
        sys.exit(1)


def cmd_cleanup(args):
    """Deep cleanup and index maintenance only."""
    from patchkeeper.errors import MaintenanceAlreadyRunningError
    from patchkeeper.services.maintenance import RunMarker

    if not (args.confirm or args.force):
        print("Error: Deep cleanup permanently removes update metadata and requires --confirm (or --force)")
        sys.exit(1)

    settings = setup(args)
    cancel = install_cancel_handler()
    runner = build_runner(settings, cancel)

    try:
        with RunMarker(settings.run_marker_path):
            report = runner.run_cleanup(shrink=args.shrink or None)
    except MaintenanceAlreadyRunningError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print_report(report)
    if not report.success:
        sys.exit(1)


def browse_archive(navigator, protocol, source, destination, input_fn=input):
    """
    Interactive Year -> Month -> Backup selection.

    Returns a SyncResult, or None if the operator quit.
    """
    from patchkeeper.services.sync.archive import ArchiveLevel

    while True:
        labels = navigator.labels()
        print(f"\n=== Select {navigator.level.value} ===")
        if not labels:
            print("  (nothing here)")
        for number, label in enumerate(labels, 1):
            print(f"  {number}. {label}")
        print("  a. Copy all backups under this selection")
        if navigator.level != ArchiveLevel.YEAR:
            print("  b. Back")
        print("  q. Quit")

        choice = input_fn("> ").strip().lower()
        if choice == "q":
            return None
        if choice == "b":
            if not navigator.back():
                print("Already at the top level")
            continue
        if choice == "a":
            return protocol.copy_all(navigator.leaves(), source, destination)

        try:
            backup = navigator.select(int(choice) - 1)
        except ValueError:
            print(f"Invalid choice: {choice}")
            continue
        except IndexError as e:
            print(e)
            continue
        if backup is not None:
            return protocol.import_backup(backup, destination)


def cmd_sync(args):
    """Differential sync to or from transport media."""
    from patchkeeper.services.sync.archive import ArchiveNavigator
    from patchkeeper.services.sync.protocol import DifferentialSyncProtocol

    settings = setup(args)
    cancel = install_cancel_handler()
    protocol = DifferentialSyncProtocol.from_settings(settings, cancel_event=cancel)

    if args.mode == "full":
        result = protocol.sync(args.source, args.destination)
    else:
        if not Path(args.source).is_dir():
            print(f"Error: Source root is not accessible: {args.source}")
            sys.exit(1)
        navigator = ArchiveNavigator(args.source)
        result = browse_archive(navigator, protocol, args.source, args.destination)
        if result is None:
            print("Nothing copied.")
            return

    print_sync_result(result)
    if not result.success:
        sys.exit(1)


def cmd_status(args):
    """Show store statistics and recent backups."""
    from patchkeeper.errors import StoreError
    from patchkeeper.services.backup import BackupManager, format_size

    settings = setup(args)
    store = get_store(settings)

    print("\n=== Store Status ===\n")
    try:
        stats = store.get_stats()
    except StoreError as e:
        print(f"Store unavailable: {e}")
        sys.exit(1)

    print(f"Store size: {format_size(stats.size_bytes)}")
    print(f"Data files: {stats.allocated_mb} MB allocated, {stats.used_mb} MB used, {stats.free_mb} MB free")
    print(f"Updates: {stats.updates}")
    print(f"Declined revisions: {stats.declined_revisions}")
    print(f"Superseded revisions: {stats.superseded_revisions}")
    print(f"Supersession records: {stats.supersession_records}")
    print(f"Status records: {stats.status_records}")

    backups = BackupManager.from_settings(store, settings).list_backups()
    print(f"\nBackups in {settings.BACKUP_DIR}: {len(backups)}")
    for info in backups[:10]:
        print(f"  {info.created:%Y-%m-%d %H:%M}  {info.size_display:>12}  {info.name}")
    print()


def cmd_backup(args):
    """Back up the store, then prune old backups."""
    from patchkeeper.services.backup import BackupManager

    settings = setup(args)
    manager = BackupManager.from_settings(get_store(settings), settings)
    backup_phase, retention_phase = manager.backup_and_prune(args.destination)

    print()
    print_phase(backup_phase)
    print_phase(retention_phase)
    print()
    if not backup_phase.success:
        sys.exit(1)


def cmd_prune_backups(args):
    """Apply backup retention only."""
    from patchkeeper.services.backup import BackupManager, format_size

    settings = setup(args)
    manager = BackupManager.from_settings(get_store(settings), settings)
    result = manager.apply_retention(args.directory, max_age_days=args.max_age_days)

    print(f"\nDeleted: {result.deleted_count}")
    print(f"Kept: {result.kept_count}")
    print(f"Freed: {format_size(result.bytes_freed)}")
    for error in result.errors:
        print(f"  error: {error}")
    print()


def cmd_archive(args):
    """Print the Year/Month/Backup archive tree."""
    from patchkeeper.services.sync.archive import describe_archive, scan_archive

    setup(args)
    if not Path(args.root).is_dir():
        print(f"Error: Archive root is not accessible: {args.root}")
        sys.exit(1)

    years = scan_archive(args.root, include_sizes=args.sizes)
    print(f"\n=== Archive {args.root} ===\n")
    if not years:
        print("No year folders found")
    for line in describe_archive(years):
        print(line)
    print()


def cmd_restore(args):
    """Restore the store from a backup file."""
    from patchkeeper.errors import BackupError, StoreError
    from patchkeeper.services.backup import BackupManager

    if not args.confirm:
        print("Error: Restore replaces the current store and requires --confirm")
        sys.exit(1)

    settings = setup(args)
    manager = BackupManager.from_settings(get_store(settings), settings)
    try:
        manager.restore(args.file)
    except (BackupError, StoreError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Restored store from {args.file}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Patch server maintenance and air-gap sync CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Full maintenance run with an export for the disconnected site
  python -m patchkeeper.cli.maintenance run --export-path E:\\Exports

  # Deep cleanup only
  python -m patchkeeper.cli.maintenance cleanup --confirm

  # Import the newest snapshot from media
  python -m patchkeeper.cli.maintenance sync --source E:\\ --destination C:\\WSUS
        """,
    )
    parser.add_argument("--json", action="store_true", help="Emit JSON log lines")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run command
    run_parser = subparsers.add_parser("run", help="Full maintenance run")
    run_parser.add_argument("--skip-deep-cleanup", action="store_true", help="Skip edge prune and metadata purge")
    run_parser.add_argument("--export-path", help="Write a Year/Month/Day export snapshot under this root")
    run_parser.add_argument(
        "--export-mode",
        choices=["full", "differential", "new-only"],
        default=None,
        help="Content to export: everything, files at least --export-days old, or files changed within --export-days",
    )
    run_parser.add_argument("--export-days", type=int, default=None, help="Age window for partial exports (default: EXPORT_DAYS)")
    run_parser.add_argument("--shrink", action="store_true", help="Shrink the store after index maintenance")
    run_parser.set_defaults(func=cmd_run)

    # cleanup command
    cleanup_parser = subparsers.add_parser("cleanup", help="Deep cleanup and index maintenance")
    cleanup_parser.add_argument("--confirm", action="store_true", help="Confirm deep cleanup")
    cleanup_parser.add_argument("--force", action="store_true", help="Alias for --confirm (unattended runs)")
    cleanup_parser.add_argument("--shrink", action="store_true", help="Shrink the store after index maintenance")
    cleanup_parser.set_defaults(func=cmd_cleanup)

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Differential sync between roots")
    sync_parser.add_argument("--source", required=True, help="Source root")
    sync_parser.add_argument("--destination", required=True, help="Destination root")
    sync_parser.add_argument("--mode", choices=["full", "browse-archive"], default="full", help="Sync mode")
    sync_parser.set_defaults(func=cmd_sync)

    # status command
    status_parser = subparsers.add_parser("status", help="Store statistics and recent backups")
    status_parser.set_defaults(func=cmd_status)

    # backup command
    backup_parser = subparsers.add_parser("backup", help="Back up the store and prune old backups")
    backup_parser.add_argument("--destination", help="Backup directory (default: BACKUP_DIR)")
    backup_parser.set_defaults(func=cmd_backup)

    # prune-backups command
    prune_parser = subparsers.add_parser("prune-backups", help="Delete backups past the retention horizon")
    prune_parser.add_argument("--max-age-days", type=int, default=None, help="Override BACKUP_RETENTION_DAYS")
    prune_parser.add_argument("--directory", help="Backup directory (default: BACKUP_DIR)")
    prune_parser.set_defaults(func=cmd_prune_backups)

    # archive command
    archive_parser = subparsers.add_parser("archive", help="Print the export archive tree")
    archive_parser.add_argument("--root", required=True, help="Archive root")
    archive_parser.add_argument("--sizes", action="store_true", help="Compute folder sizes (slow on large trees)")
    archive_parser.set_defaults(func=cmd_archive)

    # restore command
    restore_parser = subparsers.add_parser("restore", help="Restore the store from a backup file")
    restore_parser.add_argument("--file", required=True, help="Backup file")
    restore_parser.add_argument("--confirm", action="store_true", help="Confirm restore")
    restore_parser.set_defaults(func=cmd_restore)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
